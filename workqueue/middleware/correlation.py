# workqueue/middleware/correlation.py
"""
Correlation ID Middleware
Every request and every executed task carries a traceable correlation ID
that is injected into log records.
"""

import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variable for correlation ID (safe across threads and asyncio tasks)
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='no-corr-id')


def get_correlation_id() -> str:
    """Get current correlation ID from context"""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID"""
    return f"corr-{uuid.uuid4().hex[:12]}"


@contextmanager
def correlation_scope(corr_id: str) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block (used per task)"""
    token = correlation_id_var.set(corr_id)
    try:
        yield corr_id
    finally:
        correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Logging filter to inject correlation ID into log records"""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that ensures every request has a correlation ID.

    The ID is taken from the X-Correlation-ID request header when present,
    otherwise generated, and echoed back on the response.
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        corr_id = request.headers.get(self.HEADER_NAME)
        if not corr_id:
            corr_id = generate_correlation_id()

        with correlation_scope(corr_id):
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = corr_id
            return response
