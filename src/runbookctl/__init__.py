"""runbookctl - print or execute setup runbooks step by step."""

__version__ = "0.3.0"
