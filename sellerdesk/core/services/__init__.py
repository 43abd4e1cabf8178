"""Core services composing the infrastructure adapters."""
