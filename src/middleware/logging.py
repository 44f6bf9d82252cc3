"""Structured logging and request logging middleware.

Services log through the standard ``logging`` module; ``configure_logging``
routes those records through structlog's JSON renderer as well, so every line
written while a request is handled carries its request id, caller and
requested tenant.
"""

import logging
import time
import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.settings import get_settings

REQUEST_ID_HEADER = "X-Request-ID"
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key", "x-auth-token"})


def configure_logging() -> None:
    """Configure JSON logging for structlog and stdlib loggers alike."""
    settings = get_settings()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line when a request starts and one when it finishes, with timing,
    the caller and the tenant the request acted for.
    """

    def __init__(self, app, logger_name: str = "ledger.http"):
        super().__init__(app)
        self.logger = structlog.get_logger(logger_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        request_data = {
            "query_params": dict(request.query_params),
            "client_ip": self._get_client_ip(request),
            "user_agent": request.headers.get("user-agent", ""),
        }
        if get_settings().debug:
            request_data["headers"] = {
                key: "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value
                for key, value in request.headers.items()
            }
        self.logger.info("HTTP request started", **request_data)

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                "HTTP request failed with exception",
                error_type=type(e).__name__,
                error_message=str(e),
                process_time_ms=self._elapsed_ms(start_time),
                **self._caller(request),
            )
            raise

        process_time_ms = self._elapsed_ms(start_time)
        response_data = {
            "status_code": response.status_code,
            "process_time_ms": process_time_ms,
            **self._caller(request),
        }

        if response.status_code < 400:
            self.logger.info("HTTP request completed", **response_data)
        elif response.status_code in (402, 409):
            # Expected ledger outcomes (insufficient credits, duplicates)
            self.logger.info("HTTP request completed with ledger rejection", **response_data)
        elif response.status_code < 500:
            self.logger.warning("HTTP request completed with client error", **response_data)
        else:
            self.logger.error("HTTP request completed with server error", **response_data)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = str(process_time_ms / 1000)
        return response

    def _elapsed_ms(self, start_time: float) -> float:
        return round((time.perf_counter() - start_time) * 1000, 2)

    def _caller(self, request: Request) -> dict:
        # Set by the inner middlewares, so only visible once the request has run
        tenant_id = getattr(request.state, "requested_tenant_id", None)
        return {
            "user_id": getattr(request.state, "user_id", None),
            "tenant_id": str(tenant_id) if tenant_id else None,
        }

    def _get_client_ip(self, request: Request) -> str:
        """Client address, honouring proxy headers."""
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"
