"""Domain Layer: interfaces, value objects, events and errors.

Nothing in here performs I/O; infrastructure adapters implement the
interfaces and the core layer composes them.
"""
