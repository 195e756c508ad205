"""
Utility modules for Portfolio Sync.
"""

from portfolio_sync.utils.logging import (
    get_logger,
    setup_logging,
    log_api_call,
    log_save_transition,
    log_error_with_context,
)
from portfolio_sync.utils.resilience import (
    RetryDecision,
    RetryPolicy,
    retry_with_backoff,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_api_call",
    "log_save_transition",
    "log_error_with_context",
    "RetryDecision",
    "RetryPolicy",
    "retry_with_backoff",
]
