"""Chiron - local mental-wellness companion with a session and safety pipeline."""

__version__ = "0.1.0"
