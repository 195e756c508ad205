"""Portfolio content autosave and GitHub commit service."""

__version__ = "0.1.0"
