"""Core configuration, observability, policy and error types."""
