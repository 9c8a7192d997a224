"""runbookctl command modules."""
