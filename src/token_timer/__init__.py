"""Token Timer: a token wallet spent on timed leisure sessions."""

__version__ = "0.1.0"
