"""Workqueue Middleware Package"""

from .correlation import (
    CorrelationIdFilter,
    CorrelationIdMiddleware,
    correlation_id_var,
    correlation_scope,
    get_correlation_id,
)

__all__ = [
    "CorrelationIdFilter",
    "CorrelationIdMiddleware",
    "correlation_id_var",
    "correlation_scope",
    "get_correlation_id",
]
