"""共通の型定義をエクスポートする."""

from src.common.defs.curation import CurationResult, CurationStatistics, DedupAssessment
from src.common.defs.insight import (
    Insight,
    InsightScore,
    QualityAssessment,
    ReflectionResult,
)
from src.common.defs.trajectory import Trajectory, TrajectoryMetadata

__all__ = [
    "Trajectory",
    "TrajectoryMetadata",
    "Insight",
    "InsightScore",
    "QualityAssessment",
    "ReflectionResult",
    "CurationResult",
    "CurationStatistics",
    "DedupAssessment",
]
