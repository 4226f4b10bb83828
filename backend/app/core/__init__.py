"""Core helpers shared by the API layer."""
