"""Core infrastructure: configuration and document storage."""
