"""Generatorの1回の対話を記録するTrajectoryモデルの定義."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.components.playbook_store.models import UtcDatetime, utc_now


class TrajectoryMetadata(BaseModel):
    """Trajectory生成時の付帯情報."""

    model_config = ConfigDict(frozen=True)

    model: str
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    tokens_used: int | None = None


class Trajectory(BaseModel):
    """クエリ・応答と、注入したBulletの帰属情報を記録する不変モデル."""

    model_config = ConfigDict(frozen=True)

    query: str
    response: str
    bullets_used: tuple[str, ...] = Field(default_factory=tuple)
    bullets_helpful: tuple[str, ...] = Field(default_factory=tuple)
    bullets_harmful: tuple[str, ...] = Field(default_factory=tuple)
    metadata: TrajectoryMetadata

    @property
    def timestamp(self) -> datetime:
        """生成日時を返す."""
        return self.metadata.timestamp
