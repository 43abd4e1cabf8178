"""Cache Provider Implementations.

Two interchangeable backends for the CacheProvider interface: a
process-local map and a Redis-backed shared store.
Bounded Context: Cache Management
"""
