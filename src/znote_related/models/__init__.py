"""Domain models for related-note recommendations."""
