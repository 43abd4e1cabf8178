"""Domain events emitted by the API access layer."""
