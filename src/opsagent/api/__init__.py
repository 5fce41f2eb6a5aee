"""Outer surfaces of opsagent."""
