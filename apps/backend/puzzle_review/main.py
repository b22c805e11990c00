from __future__ import annotations

import time

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response

from .config import settings
from .flows import ReviewQueueService, ReviewStatsAggregator
from .logging import configure_logging, logger
from .metrics import registry
from .middleware import RequestIDMiddleware
from .routers import health, review
from .store import ReviewRecordStore, create_store


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """Emit structured request logs and capture latency/metrics for each call."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        start = time.time()
        path = request.url.path
        method = request.method
        is_error = False
        status_code: int | None = None
        error_type: str | None = None
        error_message: str | None = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            is_error = status_code >= 500
            return response
        except Exception as exc:
            is_error = True
            status_code = 500
            error_type = exc.__class__.__name__
            raw_error_message = str(exc)
            error_message = raw_error_message if len(raw_error_message) <= 200 else f"{raw_error_message[:197]}..."
            raise
        finally:
            latency_ms = (time.time() - start) * 1000
            registry.record(path, latency_ms, is_error=is_error)
            # 5xx は severity=ERROR で拾えるよう logger.error を使い分ける
            log_method = logger.error if is_error else logger.info
            log_method(
                "request_complete",
                path=path,
                method=method,
                latency_ms=latency_ms,
                is_error=is_error,
                status_code=status_code,
                error_type=error_type,
                error_message=error_message,
                request_id=getattr(request.state, "request_id", None),
                learner_id=request.headers.get("x-user-id"),
            )


def create_app(store: ReviewRecordStore | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    - store: テストなどで差し替える ReviewRecordStore（未指定なら設定から生成）
    """
    configure_logging()
    app = FastAPI(title="Puzzle Review API", version="0.1.0")

    review_store = store if store is not None else create_store()
    app.state.review_store = review_store
    app.state.review_queue = ReviewQueueService(review_store)
    app.state.review_stats = ReviewStatsAggregator(review_store)
    logger.info(
        "review_app_initialised",
        store_backend=settings.store_backend if store is None else type(store).__name__,
        environment=settings.environment,
    )

    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]
    # ワイルドカード許可時は資格情報付き CORS を無効にする
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される。
    # AccessLog が request_id を参照できるよう RequestID を最外周に置く。
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(review.router, prefix="/api/review")
    app.include_router(health.router)
    return app


app = create_app()
