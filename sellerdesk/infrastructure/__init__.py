"""Infrastructure Layer: Contains concrete implementations and adapters.

Connects the access layer to the outside world (the platform's HTTP API,
Redis, the local file system, the terminal) by implementing the interfaces
defined in the domain layer.
"""
