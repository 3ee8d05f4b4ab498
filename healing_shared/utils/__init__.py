"""
Self-Healing Engine - Shared Utilities Package
==============================================

Logging, HTTP client, retry, and clock helpers.
"""

from healing_shared.utils.logging import get_logger, setup_logging
from healing_shared.utils.http_client import ServiceClient
from healing_shared.utils.retry import retry_async, RetryConfig, CircuitBreaker
from healing_shared.utils.clock import utc_now

__all__ = [
    "get_logger",
    "setup_logging",
    "ServiceClient",
    "retry_async",
    "RetryConfig",
    "CircuitBreaker",
    "utc_now",
]
