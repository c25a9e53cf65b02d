"""Native transcript rows: one ``Message.to_dict()`` per line."""

from __future__ import annotations

from clihub.shared.models.message import Message

from .base import TranscriptFormat


def decode_row(row: dict, line_no: int) -> Message | None:
    if "role" not in row:
        return None
    data = dict(row)
    if not data.get("id"):
        data["id"] = f"line-{line_no}"
    return Message.from_dict(data)


def encode_message(message: Message) -> dict:
    return message.to_dict()


NATIVE_FORMAT = TranscriptFormat(
    name="clihub",
    decode=decode_row,
    encode=encode_message,
)
