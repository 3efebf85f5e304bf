"""Playbookデータモデルの定義."""

import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, computed_field


def utc_now() -> datetime:
    """現在時刻をUTCで返す."""
    return datetime.now(tz=UTC)


def _assume_utc(value: datetime) -> datetime:
    """タイムゾーン情報のない日時をUTCとみなす."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


def new_bullet_id() -> str:
    """新しいBulletに一意のIDを生成する."""
    return str(uuid.uuid4())


class BulletMetadata(BaseModel):
    """Bulletの利用状況を表すメタデータ."""

    created: UtcDatetime = Field(default_factory=utc_now)
    helpful_count: int = Field(default=0, ge=0)
    harmful_count: int = Field(default=0, ge=0)
    last_used: UtcDatetime | None = None
    embedding: list[float] | None = None


class Bullet(BaseModel):
    """個別の知識単位を表すモデル.

    Bulletはhelpful/harmfulカウンターによる有用度を持つ.
    """

    id: str = Field(default_factory=new_bullet_id)
    section: str
    content: str
    metadata: BulletMetadata = Field(default_factory=BulletMetadata)

    @computed_field
    @property
    def helpfulness_ratio(self) -> float:
        """helpful数とharmful数から有用度を算出する.

        Returns:
            有用度（0.0〜1.0）. カウンターが0の場合は0.5を返す.
        """
        total = self.metadata.helpful_count + self.metadata.harmful_count
        if total == 0:
            return 0.5
        return self.metadata.helpful_count / total


class BulletUpdate(BaseModel):
    """Bulletへの部分更新を表すモデル. 未指定のフィールドは変更しない."""

    model_config = ConfigDict(extra="ignore")

    section: str | None = None
    content: str | None = None
    metadata: dict[str, Any] | None = None


DeltaType = Literal["ADD", "UPDATE", "DELETE"]


class DeltaOperation(BaseModel):
    """Curatorが生成するPlaybookへの更新差分を表すモデル.

    JSON上のキーは bulletId を使用し、bullet_id も受け付ける.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: DeltaType
    bullet: Bullet | None = None
    bullet_id: str | None = Field(default=None, alias="bulletId")
    updates: BulletUpdate | None = None


class DeltaApplyResult(BaseModel):
    """apply_deltasの適用結果."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0


class BulletFilter(BaseModel):
    """queryに渡す絞り込み条件. 未指定の条件は制約を課さない."""

    section: str | None = None
    min_helpful_count: int | None = None
    max_harmful_count: int | None = None
    content_contains: str | None = None
    created_after: UtcDatetime | None = None
    created_before: UtcDatetime | None = None
    used_after: UtcDatetime | None = None
    used_before: UtcDatetime | None = None


MatchType = Literal["exact", "substring", "embedding"]


class SearchResult(BaseModel):
    """検索結果を表すモデル."""

    bullet: Bullet
    score: float
    match_type: MatchType


class PlaybookStats(BaseModel):
    """Playbookの統計情報."""

    total: int = 0
    by_section: dict[str, int] = Field(default_factory=dict)
    avg_helpful: float = 0.0
    avg_harmful: float = 0.0
    most_recent: Bullet | None = None
    most_helpful: Bullet | None = None


class PlaybookSnapshot(BaseModel):
    """永続化用のPlaybookスナップショット."""

    context_id: str
    updated_at: UtcDatetime = Field(default_factory=utc_now)
    bullets: list[Any] = Field(default_factory=list)
