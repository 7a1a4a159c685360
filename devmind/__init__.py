"""DevMind - local development memory core."""

__version__ = "0.3.0"
