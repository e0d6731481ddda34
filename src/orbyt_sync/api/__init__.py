"""HTTP surface for the calendar sync service."""
