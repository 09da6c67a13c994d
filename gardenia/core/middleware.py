import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from ..request_context import request_id_ctx

logger = structlog.get_logger("gardenia.middleware")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get("X-Request-ID") or "").strip()[:80] or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            app="gardenia",
        )
        rid_token = request_id_ctx.set(request_id)

        start_time = time.perf_counter()
        try:
            try:
                response: Response = await call_next(request)
            except Exception as exc:
                process_time = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "request_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=round(process_time, 2),
                    exc_info=True,
                )
                response = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
                response.headers["X-Request-ID"] = request_id
                return response

            process_time = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_finished",
                status=response.status_code,
                duration_ms=round(process_time, 2),
            )
            return response
        finally:
            request_id_ctx.reset(rid_token)
