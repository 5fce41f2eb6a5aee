"""In-process messaging."""
