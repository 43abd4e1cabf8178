"""API Resilience Implementations.

Contains the request queue that bounds concurrency and start rate, the
exponential backoff engine, and the rate-limit header tracker.
Bounded Context: API Resilience
"""
