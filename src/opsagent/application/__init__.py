"""Application services: decision making, execution and background sweeps."""
