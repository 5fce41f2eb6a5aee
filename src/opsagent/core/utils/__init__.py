"""Shared helpers used across the core and infrastructure layers."""
