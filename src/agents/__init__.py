"""Lambda agents."""
