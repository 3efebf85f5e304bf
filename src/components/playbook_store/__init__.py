"""Playbook store component with JSON persistence."""

from src.components.playbook_store.models import (
    Bullet,
    BulletFilter,
    BulletMetadata,
    BulletUpdate,
    DeltaApplyResult,
    DeltaOperation,
    PlaybookStats,
    SearchResult,
)
from src.components.playbook_store.repository import PlaybookRepository
from src.components.playbook_store.similarity import cosine_similarity
from src.components.playbook_store.store import PlaybookStore

__all__ = [
    "Bullet",
    "BulletFilter",
    "BulletMetadata",
    "BulletUpdate",
    "DeltaApplyResult",
    "DeltaOperation",
    "PlaybookRepository",
    "PlaybookStats",
    "PlaybookStore",
    "SearchResult",
    "cosine_similarity",
]
