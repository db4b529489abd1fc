"""Retry and circuit-breaking policies composed around routing."""

from .circuit_breaker import CircuitBreaker, BreakerState
from .retry import RetryPolicy, ResilientRouter

__all__ = ['CircuitBreaker', 'BreakerState', 'RetryPolicy', 'ResilientRouter']
