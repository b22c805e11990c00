from datetime import UTC, datetime
from functools import partial
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import anyio  # オフロード用
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from ..errors import StoreUnavailable
from ..flows import ReviewQueueService, ReviewStatsAggregator, start_of_day
from ..logging import logger
from ..models.review import (
    DueQueueItem,
    DueQueueResponse,
    ItemMetadataRequest,
    PuzzleCompletedResponse,
    RecordReviewRequest,
    RecordReviewResponse,
    ReviewState,
    ReviewStatsResponse,
)
from ..store import ItemMetadata

router = APIRouter(tags=["review"])

_ERROR_STATUS = {
    "invalid_quality": 422,
    "invalid_time_spent": 422,
    "stale_revision": 409,
    "conflict": 409,
    "store_unavailable": 503,
}


def get_learner_id(x_user_id: str | None = Header(default=None)) -> str:
    """Learner id forwarded by the authenticating proxy in `X-User-Id`."""

    learner_id = (x_user_id or "").strip()
    if not learner_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return learner_id


def get_queue_service(request: Request) -> ReviewQueueService:
    return request.app.state.review_queue


def get_stats_aggregator(request: Request) -> ReviewStatsAggregator:
    return request.app.state.review_stats


def _store_unavailable(exc: StoreUnavailable, operation: str, learner_id: str) -> HTTPException:
    logger.error("review_request_store_unavailable", operation=operation, learner_id=learner_id, error=str(exc))
    return HTTPException(status_code=503, detail="review store unavailable")


@router.get("/queue", response_model=DueQueueResponse, summary="期限到来済みの復習キューを取得")
async def review_queue(
    limit: int | None = Query(default=None, ge=1, le=500),
    learner_id: str = Depends(get_learner_id),
    service: ReviewQueueService = Depends(get_queue_service),
) -> DueQueueResponse:
    """Return due items ordered by next_review_date ascending (most overdue first)."""
    try:
        due = await anyio.to_thread.run_sync(partial(service.get_due_queue, learner_id, limit=limit))
    except StoreUnavailable as exc:
        raise _store_unavailable(exc, "queue", learner_id) from exc
    return DueQueueResponse(items=[DueQueueItem.from_due(d) for d in due])


@router.post("/grade", response_model=RecordReviewResponse, summary="自己評価を記録して次回復習日を更新")
async def review_grade(
    req: RecordReviewRequest,
    learner_id: str = Depends(get_learner_id),
    service: ReviewQueueService = Depends(get_queue_service),
) -> RecordReviewResponse:
    """Grade a puzzle with SM-2 and persist the new schedule.

    失敗時の HTTP ステータス:
    - 422: quality / time_spent が不正
    - 409: 競合（再試行上限）または revision 不一致
    - 503: ストアに到達できない
    """
    # anyio.to_thread.run_sync はキーワード引数を転送しないため partial で包む
    result = await anyio.to_thread.run_sync(
        partial(
            service.submit_review,
            learner_id,
            req.item_id,
            req.quality,
            req.time_spent,
            expected_revision=req.revision,
        )
    )
    if not result.ok or result.item is None:
        error = result.error or "store_unavailable"
        raise HTTPException(status_code=_ERROR_STATUS.get(error, 500), detail=error)
    return RecordReviewResponse(ok=True, item=ReviewState.from_item(result.item))


@router.get("/stats", response_model=ReviewStatsResponse, summary="復習の進捗統計")
async def review_stats(
    tz: str = Query(default="UTC", description="IANA timezone used to resolve 'today'"),
    learner_id: str = Depends(get_learner_id),
    aggregator: ReviewStatsAggregator = Depends(get_stats_aggregator),
) -> ReviewStatsResponse:
    """Return due/tracked counts and today's review activity for the learner."""
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"unknown timezone: {tz}") from exc
    now = datetime.now(UTC)
    try:
        stats = await anyio.to_thread.run_sync(
            partial(aggregator.get_review_stats, learner_id, day_start=start_of_day(now, zone), now=now)
        )
    except StoreUnavailable as exc:
        raise _store_unavailable(exc, "stats", learner_id) from exc
    return ReviewStatsResponse.from_stats(stats)


@router.post(
    "/items/{item_id}/completed",
    response_model=PuzzleCompletedResponse,
    summary="初回クリア時に復習対象へ登録",
)
async def puzzle_completed(
    item_id: str,
    learner_id: str = Depends(get_learner_id),
    service: ReviewQueueService = Depends(get_queue_service),
) -> PuzzleCompletedResponse:
    """Seed the review record for a freshly solved puzzle (no-op when already tracked)."""
    try:
        created = await anyio.to_thread.run_sync(partial(service.on_puzzle_first_completed, learner_id, item_id))
    except StoreUnavailable as exc:
        raise _store_unavailable(exc, "completed", learner_id) from exc
    return PuzzleCompletedResponse(created=created)


@router.put("/items/{item_id}/metadata", status_code=204, summary="パズルの表示情報を登録")
async def put_item_metadata(
    item_id: str,
    req: ItemMetadataRequest,
    service: ReviewQueueService = Depends(get_queue_service),
) -> None:
    metadata = ItemMetadata(
        item_id=item_id,
        title=req.title,
        math_concept=req.math_concept,
        difficulty=req.difficulty,
        zone_id=req.zone_id,
    )
    try:
        await anyio.to_thread.run_sync(partial(service.register_item_metadata, metadata))
    except StoreUnavailable as exc:
        raise _store_unavailable(exc, "metadata", "") from exc
