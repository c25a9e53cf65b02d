"""clihub: browse AI CLI transcripts and drive live CLI conversations."""

__version__ = "0.1.0"
