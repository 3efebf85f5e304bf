"""Reflectorの分析結果を表すデータモデルの定義."""

from pydantic import BaseModel, Field


class Insight(BaseModel):
    """Trajectoryから抽出された、Playbookへ未反映の教訓."""

    observation: str
    lesson: str
    suggested_bullet: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    section: str = "General"


class InsightScore(BaseModel):
    """品質評価における個別Insightのスコア."""

    insight_index: int = 0
    specificity: float = 0.0
    relevance: float = 0.0
    novelty: float = 0.0
    confidence: float = 0.0
    overall: float = 0.0


class QualityAssessment(BaseModel):
    """Insight集合に対する品質評価."""

    overall_quality: float = Field(default=0.0, ge=0.0, le=1.0)
    insight_scores: list[InsightScore] = Field(default_factory=list)
    improvement_suggestions: list[str] = Field(default_factory=list)
    should_refine: bool = True


class ReflectionResult(BaseModel):
    """Reflectorの出力全体を表すモデル."""

    insights: list[Insight]
    iterations: int = Field(default=1, ge=1)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
