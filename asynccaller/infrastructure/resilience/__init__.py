"""API Resilience Implementations.

Contains the token bucket rate limiter, outcome classification and the
backoff / Retry-After delay computation used by the retry engine.
Bounded Context: API Resilience
"""
