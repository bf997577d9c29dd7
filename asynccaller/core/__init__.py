"""Core Application Layer: the call scheduler and its retry engine.

Connects the domain layer with the resilience infrastructure (token bucket,
status classification, delay computation).
"""
