"""Database clients."""
