"""
Core middleware.
"""

from collections.abc import Callable
from uuid import UUID, uuid4

from django.http import HttpRequest, HttpResponse

from apps.core.logging import bind_contextvars, clear_contextvars

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware:
    """
    Tags every request with a correlation ID for log tracing.

    Uses the incoming X-Correlation-ID header when it holds a valid UUID,
    otherwise generates one. The ID is bound to the structlog context for the
    duration of the request and echoed in the response header.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        correlation_id = self._parse(request.headers.get(CORRELATION_HEADER)) or uuid4()
        request.correlation_id = correlation_id  # type: ignore[attr-defined]

        clear_contextvars()
        bind_contextvars(correlation_id=correlation_id)
        try:
            response = self.get_response(request)
        finally:
            clear_contextvars()

        response[CORRELATION_HEADER] = str(correlation_id)
        return response

    @staticmethod
    def _parse(value: str | None) -> UUID | None:
        if not value:
            return None
        try:
            return UUID(value)
        except ValueError:
            return None
