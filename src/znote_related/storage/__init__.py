"""Storage layer: embedding stores, note and graph repositories."""
