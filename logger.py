import logging
import sys
import time
import uuid
from functools import wraps
from typing import Any, Callable, Optional
import structlog
from prometheus_client import Counter, Histogram, start_http_server

# Slack and LLM calls
api_calls = Counter('slack_api_calls_total', 'Total Slack API calls', ['api_name', 'status'])
api_latency = Histogram('slack_api_latency_seconds', 'Latency of single Slack API calls', ['api_name'])
api_retries = Counter('slack_api_retries_total', 'Retries of remote calls', ['api_name', 'reason'])
processing_time = Histogram('processing_seconds', 'Time spent processing', ['operation'])

# Channel cache
cache_hits = Counter('channel_cache_hits_total', 'Channel reads served from the cache')
cache_misses = Counter('channel_cache_misses_total', 'Channel reads that required a foreground fetch')
cache_refreshes = Counter('channel_cache_refreshes_total', 'Channel cache refreshes', ['mode', 'status'])

analyses = Counter('channel_analyses_total', 'Channel analyses', ['outcome'])

# HTTP surface
http_requests = Counter('http_requests_total', 'HTTP requests served', ['method', 'status'])
http_latency = Histogram('http_request_seconds', 'HTTP request latency', ['method'])


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog to emit one JSON object per line on stdout."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_metrics(func: Callable) -> Callable:
    """Time a call; functions tagged with ``api_name`` also count as API calls."""
    api_name: Optional[str] = getattr(func, 'api_name', None)

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        status = "error"
        try:
            result = func(*args, **kwargs)
            status = "success"
            return result
        finally:
            duration = time.time() - start_time
            processing_time.labels(operation=func.__name__).observe(duration)
            if api_name:
                api_latency.labels(api_name=api_name).observe(duration)
                api_calls.labels(api_name=api_name, status=status).inc()
    return wrapper


def start_metrics_server(port: int = 8000) -> None:
    start_http_server(port)
    get_logger(__name__).info("Metrics server listening", port=port)


class MetricsMiddleware:
    """WSGI middleware: binds a request id into the log context and records
    request counts by status code."""

    def __init__(self, app: Any):
        self.app = app

    def __call__(self, environ: dict, start_response: Callable) -> Any:
        method = environ.get("REQUEST_METHOD", "GET")
        status_holder = {"status": "500"}

        def capture_status(status: str, headers: list, exc_info: Any = None) -> Any:
            status_holder["status"] = status.split(" ", 1)[0]
            return start_response(status, headers, exc_info)

        structlog.contextvars.bind_contextvars(
            request_id=environ.get("HTTP_X_REQUEST_ID") or uuid.uuid4().hex[:12],
            path=environ.get("PATH_INFO", ""),
        )
        start_time = time.time()
        try:
            return self.app(environ, capture_status)
        finally:
            http_latency.labels(method=method).observe(time.time() - start_time)
            http_requests.labels(method=method, status=status_holder["status"]).inc()
            structlog.contextvars.clear_contextvars()
