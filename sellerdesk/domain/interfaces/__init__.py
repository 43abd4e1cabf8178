"""Domain Interfaces (Ports):

Defines the contracts (Abstract Base Classes) that infrastructure components
and host applications must implement. The API client depends on these
interfaces, not on concrete backends.
"""
