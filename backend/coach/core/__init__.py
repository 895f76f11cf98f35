"""Core configuration, errors and LLM client."""
