"""opsagent command line interface."""
