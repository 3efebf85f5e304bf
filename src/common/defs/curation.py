"""Curatorの出力を表すデータモデルの定義."""

from typing import Literal

from pydantic import BaseModel, Field

from src.components.playbook_store.models import DeltaOperation


class CurationStatistics(BaseModel):
    """操作種別ごとの件数."""

    adds: int = 0
    updates: int = 0
    deletes: int = 0


class CurationResult(BaseModel):
    """Curatorの出力全体を表すモデル."""

    operations: list[DeltaOperation] = Field(default_factory=list)
    summary: str
    statistics: CurationStatistics = Field(default_factory=CurationStatistics)


DedupRecommendation = Literal["merge", "update", "keep_separate", "discard"]


class DedupAssessment(BaseModel):
    """新規Bulletと既存Bulletの重複判定結果."""

    assessment: Literal["DUPLICATE", "SIMILAR", "UNIQUE"] = "UNIQUE"
    related_bullets: list[str] = Field(default_factory=list)
    recommendation: DedupRecommendation = "keep_separate"
    reasoning: str = ""
