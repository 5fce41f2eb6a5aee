"""Record store implementations."""
