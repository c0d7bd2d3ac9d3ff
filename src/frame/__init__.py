"""frame: plain-text task tracking with a lossless markdown engine."""

__version__ = "0.1.0"
