"""Pydantic models and value types."""
