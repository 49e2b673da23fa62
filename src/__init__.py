"""Chat lead email pipeline."""
