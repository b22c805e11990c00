from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..metrics import registry

router = APIRouter()


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """Liveness probe.

    コンテナオーケストレータからの疎通確認用。ストアには触れない。
    """
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Return in-memory metrics snapshot.

    パス別の p95/エラー/タイムアウト/件数と、採点結果の内訳を返す。
    """
    return JSONResponse(content={"paths": registry.snapshot(), "reviews": registry.review_snapshot()})
