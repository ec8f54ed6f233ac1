"""Ralph Wiggum loop controller for CLI coding agents."""

__version__ = "1.0.9"
