"""Coach services."""
