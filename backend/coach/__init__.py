"""Coach backend: coaching sessions and weekly quota."""
