"""opsagent - event-driven decision and action pipeline for business operations."""

__version__ = "0.1.0"
