"""
Core application modules.
Contains logging, metrics, tracing, Redis access and resilience primitives.
"""
