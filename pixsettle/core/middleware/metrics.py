from starlette.middleware.base import BaseHTTPMiddleware

from pixsettle.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        _record_request_metric(request.method, request.url.path, getattr(response, "status_code", 0))
        return response


def _record_request_metric(method: str, path: str, status: int) -> None:
    http_requests_total.inc(labels={
        "method": method.upper(),
        "path": normalize_path(path),
        "status": str(status or 0),
    })
