from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ..flows import DueReview, ReviewStats
from ..scheduler import ReviewItem


class PuzzleInfo(BaseModel):
    """Display attributes of a puzzle, as provided by the content service."""

    title: str
    math_concept: str = ""
    difficulty: int = 1
    zone_id: str | None = None


class ReviewState(BaseModel):
    """SM-2 state of one (learner, puzzle) pair."""

    model_config = ConfigDict(from_attributes=True)

    item_id: str
    easiness_factor: float
    interval_days: int
    repetitions: int
    next_review_date: datetime
    last_reviewed_at: datetime | None = None
    revision: int

    @classmethod
    def from_item(cls, item: ReviewItem) -> "ReviewState":
        return cls.model_validate(item)


class DueQueueItem(ReviewState):
    """復習キューの1件（レビュー状態 + パズル表示情報）。"""

    days_overdue: int
    puzzle: PuzzleInfo | None = None

    @classmethod
    def from_due(cls, due: DueReview) -> "DueQueueItem":
        puzzle = None
        if due.metadata is not None:
            puzzle = PuzzleInfo(
                title=due.metadata.title,
                math_concept=due.metadata.math_concept,
                difficulty=due.metadata.difficulty,
                zone_id=due.metadata.zone_id,
            )
        return cls(
            **ReviewState.from_item(due.item).model_dump(),
            days_overdue=due.days_overdue,
            puzzle=puzzle,
        )


class DueQueueResponse(BaseModel):
    """Response model for the due review queue.

    期限到来済みのアイテムを next_review_date の昇順（期限超過の大きい順）で返す。
    """

    items: list[DueQueueItem]


class RecordReviewRequest(BaseModel):
    """Request model for submitting a self-graded review.

    - quality: 0..5 の自己評価（範囲チェックはサービス層で行い 422 を返す）
    - time_spent: 想起に要した秒数
    - revision: キュー取得時の revision（指定時は二重送信を検出する）
    """

    item_id: str = Field(min_length=1, max_length=128)
    quality: int
    time_spent: int = 0
    revision: int | None = Field(default=None, ge=0)


class RecordReviewResponse(BaseModel):
    ok: bool
    item: ReviewState


class ReviewStatsResponse(BaseModel):
    """進捗の見える化 用の統計レスポンス。

    - due_count: 現在時点で期限到来済みの件数
    - total_tracked: 復習対象として登録済みの件数
    - reviews_today: 今日レビュー済みのアイテム数
    - avg_quality: 今日の平均自己評価（レビューが無ければ 0）
    """

    due_count: int
    total_tracked: int
    reviews_today: int
    avg_quality: float

    @classmethod
    def from_stats(cls, stats: ReviewStats) -> "ReviewStatsResponse":
        return cls(
            due_count=stats.due_count,
            total_tracked=stats.total_tracked,
            reviews_today=stats.reviews_today,
            avg_quality=stats.avg_quality,
        )


class PuzzleCompletedResponse(BaseModel):
    created: bool


class ItemMetadataRequest(PuzzleInfo):
    """コンテンツ側から登録されるパズルの表示情報。"""

    title: str = Field(min_length=1, max_length=200)
    difficulty: int = Field(default=1, ge=1, le=10)
