"""rollcall: roster import and one-shot QR check-in for events."""

__version__ = "0.1.0"
