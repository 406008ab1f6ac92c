"""Host-facing server surface."""
