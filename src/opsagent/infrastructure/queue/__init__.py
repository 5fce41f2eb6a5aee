"""Job queue implementations."""
