"""API package for coach backend."""
