"""Bulletの集合を管理するインメモリのPlaybookストア."""

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Literal

import pydantic

from src.common.lib.errors import (
    AceError,
    CapacityError,
    DimensionMismatchError,
    NotFoundError,
    ValidationError,
)
from src.components.playbook_store.models import (
    Bullet,
    BulletFilter,
    BulletMetadata,
    BulletUpdate,
    DeltaApplyResult,
    DeltaOperation,
    PlaybookStats,
    SearchResult,
    new_bullet_id,
    utc_now,
)
from src.components.playbook_store.similarity import cosine_similarity

logger = logging.getLogger(__name__)

FeedbackKind = Literal["helpful", "harmful"]
Embedder = Callable[[str], list[float]]


class PlaybookStore:
    """Bulletを唯一所有するストアクラス.

    全ての変更はこのクラスの操作を通して行う. 各操作はインスタンス単位の
    ロックで直列化され、読み出し系の操作はディープコピーを返すため、
    呼び出し側が保持するBulletを変更してもストアには影響しない.

    apply_deltasはトランザクションではない. k番目の操作が失敗しても
    1〜k-1番目の操作は取り消されない. 原子性が必要な場合は呼び出し側で
    export()によるスナップショットを取得しておくこと.
    """

    def __init__(
        self,
        max_size: int = 1000,
        dedup_threshold: float = 0.85,
        embedder: Embedder | None = None,
    ) -> None:
        """PlaybookStoreを初期化する.

        Args:
            max_size: 保持できるBulletの最大数
            dedup_threshold: find_similarのデフォルト類似度閾値
            embedder: 埋め込み検索でクエリをベクトル化する関数（任意）
        """
        self.max_size = max_size
        self.dedup_threshold = dedup_threshold
        self.embedder = embedder
        self._bullets: dict[str, Bullet] = {}
        self._lock = threading.RLock()
        logger.info(
            "Playbook store initialized (max_size=%d, dedup_threshold=%.2f)",
            max_size,
            dedup_threshold,
        )

    def __len__(self) -> int:
        return self.count()

    def count(self) -> int:
        """保持しているBullet数を返す."""
        with self._lock:
            return len(self._bullets)

    def add(
        self,
        section: str,
        content: str,
        metadata: BulletMetadata | dict[str, Any] | None = None,
    ) -> Bullet:
        """新しいBulletを追加する.

        Args:
            section: セクション名
            content: Bulletの本文
            metadata: 既定値を上書きするメタデータ

        Returns:
            追加されたBullet

        Raises:
            CapacityError: 最大サイズに達している場合
            ValidationError: sectionまたはcontentが空、メタデータが不正な場合
        """
        with self._lock:
            self._ensure_capacity()
            section, content = self._validate_text(section, content)
            bullet = Bullet(
                id=new_bullet_id(),
                section=section,
                content=content,
                metadata=self._build_metadata(metadata),
            )
            self._bullets[bullet.id] = bullet
            logger.debug(
                "Bullet added: id=%s section=%s length=%d",
                bullet.id,
                bullet.section,
                len(bullet.content),
            )
            return bullet.model_copy(deep=True)

    def get(self, bullet_id: str) -> Bullet | None:
        """IDでBulletを取得する. 存在しない場合はNone."""
        with self._lock:
            bullet = self._bullets.get(bullet_id)
            return bullet.model_copy(deep=True) if bullet else None

    def update(self, bullet_id: str, updates: BulletUpdate | dict[str, Any]) -> Bullet:
        """既存のBulletを部分更新する.

        IDは変更されず、メタデータは既存の値にマージされる.

        Args:
            bullet_id: 更新対象のBullet ID
            updates: 更新内容

        Returns:
            更新後のBullet

        Raises:
            NotFoundError: Bulletが存在しない場合
            ValidationError: 更新後のsection/contentが空、またはメタデータが不正な場合
        """
        patch = self._coerce_update(updates)
        with self._lock:
            current = self._bullets.get(bullet_id)
            if current is None:
                msg = f"Bullet not found: {bullet_id}"
                raise NotFoundError(msg)

            section, content = self._validate_text(
                patch.section if patch.section is not None else current.section,
                patch.content if patch.content is not None else current.content,
            )
            merged = current.metadata.model_dump()
            merged.update(patch.metadata or {})

            updated = Bullet(
                id=current.id,
                section=section,
                content=content,
                metadata=self._build_metadata(merged),
            )
            self._bullets[bullet_id] = updated
            logger.debug("Bullet updated: id=%s section=%s", bullet_id, section)
            return updated.model_copy(deep=True)

    def delete(self, bullet_id: str) -> bool:
        """Bulletを削除する. 存在しない場合はFalseを返す."""
        with self._lock:
            existed = self._bullets.pop(bullet_id, None) is not None
        if existed:
            logger.debug("Bullet deleted: id=%s", bullet_id)
        return existed

    def query(self, bullet_filter: BulletFilter | dict[str, Any] | None = None) -> list[Bullet]:
        """条件に一致するBulletを挿入順で返す.

        全ての条件はAND結合され、未指定の条件は制約を課さない.

        Args:
            bullet_filter: 絞り込み条件

        Returns:
            条件に一致するBulletのリスト
        """
        if bullet_filter is None:
            criteria = BulletFilter()
        elif isinstance(bullet_filter, BulletFilter):
            criteria = bullet_filter
        else:
            criteria = BulletFilter.model_validate(bullet_filter)

        with self._lock:
            return [
                bullet.model_copy(deep=True)
                for bullet in self._bullets.values()
                if self._matches(bullet, criteria)
            ]

    def sections(self) -> list[str]:
        """Playbook内のセクション名をソートして返す."""
        with self._lock:
            return sorted({bullet.section for bullet in self._bullets.values()})

    def search(  # noqa: PLR0913
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.5,
        use_embeddings: bool = False,
        query_embedding: Sequence[float] | None = None,
    ) -> list[SearchResult]:
        """テキスト一致と埋め込み類似度でBulletを検索する.

        スコアリング:
            - 完全一致（大文字小文字を区別しない）: 1.0
            - 部分一致: min(len(query) / len(content) * 2, 0.9)
            - 埋め込み: コサイン類似度（use_embeddings指定時、双方にベクトルがある場合）

        Args:
            query: 検索クエリ
            limit: 返す件数の上限
            min_similarity: これ未満のスコアは除外する
            use_embeddings: 埋め込み検索を行うか
            query_embedding: クエリのベクトル. 未指定ならembedderで生成する

        Returns:
            スコア降順（同点は挿入順）のSearchResultリスト
        """
        needle = query.strip().lower()
        if not needle:
            return []

        with self._lock:
            bullets = [bullet.model_copy(deep=True) for bullet in self._bullets.values()]

        vector = self._resolve_query_embedding(query, use_embeddings, query_embedding)

        results: list[SearchResult] = []
        for bullet in bullets:
            haystack = bullet.content.lower()
            if haystack == needle:
                results.append(SearchResult(bullet=bullet, score=1.0, match_type="exact"))
            elif needle in haystack:
                score = min(len(needle) / len(haystack) * 2, 0.9)
                results.append(SearchResult(bullet=bullet, score=score, match_type="substring"))
            elif vector is not None and bullet.metadata.embedding is not None:
                try:
                    score = cosine_similarity(vector, bullet.metadata.embedding)
                except DimensionMismatchError:
                    logger.warning("Skipping bullet %s with mismatched embedding", bullet.id)
                    continue
                results.append(SearchResult(bullet=bullet, score=score, match_type="embedding"))

        filtered = [result for result in results if result.score >= min_similarity]
        filtered.sort(key=lambda result: result.score, reverse=True)
        return filtered[:limit]

    def record_feedback(self, bullet_ids: Iterable[str], kind: FeedbackKind) -> int:
        """Bulletのhelpful/harmfulカウンターを加算しlast_usedを記録する.

        存在しないIDは警告なしにスキップする.

        Args:
            bullet_ids: 対象のBullet IDリスト
            kind: helpful または harmful

        Returns:
            更新されたBullet数

        Raises:
            ValidationError: kindが不正な場合
        """
        if kind not in ("helpful", "harmful"):
            msg = f"Unknown feedback kind: {kind}"
            raise ValidationError(msg)

        now = utc_now()
        updated = 0
        with self._lock:
            for bullet_id in bullet_ids:
                bullet = self._bullets.get(bullet_id)
                if bullet is None:
                    continue
                if kind == "helpful":
                    bullet.metadata.helpful_count += 1
                else:
                    bullet.metadata.harmful_count += 1
                bullet.metadata.last_used = now
                updated += 1
                logger.debug(
                    "Bullet feedback recorded: id=%s kind=%s helpful=%d harmful=%d",
                    bullet_id,
                    kind,
                    bullet.metadata.helpful_count,
                    bullet.metadata.harmful_count,
                )
        return updated

    def find_similar(
        self,
        embedding: Sequence[float],
        threshold: float | None = None,
    ) -> list[Bullet]:
        """埋め込みが類似するBulletを類似度降順で返す.

        埋め込みを持つBulletのみが対象となる.
        次元が一致しない埋め込みを持つBulletは警告を出してスキップする.

        Args:
            embedding: 比較元のベクトル
            threshold: 類似度の下限. 未指定ならdedup_thresholdを使用する

        Returns:
            類似度降順のBulletリスト
        """
        limit = self.dedup_threshold if threshold is None else threshold
        scored: list[tuple[float, Bullet]] = []
        with self._lock:
            for bullet in self._bullets.values():
                if bullet.metadata.embedding is None:
                    continue
                try:
                    similarity = cosine_similarity(embedding, bullet.metadata.embedding)
                except DimensionMismatchError:
                    logger.warning("Skipping bullet %s with mismatched embedding", bullet.id)
                    continue
                if similarity >= limit:
                    scored.append((similarity, bullet.model_copy(deep=True)))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [bullet for _, bullet in scored]

    def apply_deltas(
        self,
        operations: Iterable[DeltaOperation | dict[str, Any]],
    ) -> DeltaApplyResult:
        """Delta操作を順番に適用する.

        各操作の失敗は捕捉して件数に計上し、残りの操作は継続する.
        UPDATE/DELETEの対象が存在しない場合は警告のみで、エラーに計上しない.

        Args:
            operations: DeltaOperationのリスト

        Returns:
            適用件数とエラー件数
        """
        result = DeltaApplyResult()
        with self._lock:
            for index, raw in enumerate(operations):
                try:
                    operation = (
                        raw
                        if isinstance(raw, DeltaOperation)
                        else DeltaOperation.model_validate(raw)
                    )
                    if operation.type == "ADD":
                        self._apply_add(operation)
                        result.added += 1
                    elif operation.type == "UPDATE":
                        if self._apply_update(operation):
                            result.updated += 1
                    elif self._apply_delete(operation):
                        result.deleted += 1
                except (AceError, pydantic.ValidationError) as e:
                    result.errors += 1
                    logger.error("Delta operation #%d failed: %s", index, e)  # noqa: TRY400

        logger.info(
            "Delta operations applied: added=%d updated=%d deleted=%d errors=%d",
            result.added,
            result.updated,
            result.deleted,
            result.errors,
        )
        return result

    def stats(self) -> PlaybookStats:
        """Playbookの統計情報を返す."""
        with self._lock:
            bullets = [bullet.model_copy(deep=True) for bullet in self._bullets.values()]

        if not bullets:
            return PlaybookStats()

        used = [b for b in bullets if b.metadata.last_used is not None]
        most_recent = max(used, key=lambda b: b.metadata.last_used) if used else None
        most_helpful = max(bullets, key=lambda b: b.metadata.helpful_count)

        return PlaybookStats(
            total=len(bullets),
            by_section=dict(Counter(b.section for b in bullets)),
            avg_helpful=sum(b.metadata.helpful_count for b in bullets) / len(bullets),
            avg_harmful=sum(b.metadata.harmful_count for b in bullets) / len(bullets),
            most_recent=most_recent,
            most_helpful=most_helpful,
        )

    def clear(self) -> None:
        """全てのBulletを削除する."""
        with self._lock:
            removed = len(self._bullets)
            self._bullets.clear()
        logger.info("Playbook cleared (%d bullets removed)", removed)

    def export(self) -> list[Bullet]:
        """永続化用に全Bulletを挿入順で返す."""
        with self._lock:
            return [bullet.model_copy(deep=True) for bullet in self._bullets.values()]

    def import_bullets(self, entries: Iterable[Bullet | dict[str, Any]]) -> int:
        """永続化データからBulletを読み込み、現在の内容を置き換える.

        id/section/content/metadataが欠けているエントリや検証に失敗した
        エントリは警告を出してスキップする.

        Args:
            entries: Bulletまたはdictのリスト

        Returns:
            読み込んだBullet数
        """
        imported: dict[str, Bullet] = {}
        for entry in entries:
            data = entry.model_dump() if isinstance(entry, Bullet) else entry
            if not self._has_required_fields(data):
                logger.warning("Skipping invalid bullet during import: %r", data)
                continue
            try:
                bullet = Bullet.model_validate(data)
            except pydantic.ValidationError:
                logger.warning("Skipping malformed bullet during import: %s", data["id"])
                continue
            imported[bullet.id] = bullet

        with self._lock:
            self._bullets = imported
        logger.info("Playbook imported (%d bullets)", len(imported))
        return len(imported)

    def _apply_add(self, operation: DeltaOperation) -> None:
        if operation.bullet is None:
            msg = "ADD operation requires bullet data"
            raise ValidationError(msg)

        self._ensure_capacity()
        section, content = self._validate_text(operation.bullet.section, operation.bullet.content)
        bullet_id = operation.bullet.id or new_bullet_id()
        if bullet_id in self._bullets:
            msg = f"Duplicate bullet id: {bullet_id}"
            raise ValidationError(msg)

        self._bullets[bullet_id] = Bullet(
            id=bullet_id,
            section=section,
            content=content,
            metadata=operation.bullet.metadata.model_copy(deep=True),
        )
        logger.debug("Bullet added by delta: id=%s", bullet_id)

    def _apply_update(self, operation: DeltaOperation) -> bool:
        if not operation.bullet_id or operation.updates is None:
            msg = "UPDATE operation requires bulletId and updates"
            raise ValidationError(msg)
        if operation.bullet_id not in self._bullets:
            logger.warning("Bullet %s not found for UPDATE, skipping", operation.bullet_id)
            return False
        self.update(operation.bullet_id, operation.updates)
        return True

    def _apply_delete(self, operation: DeltaOperation) -> bool:
        if not operation.bullet_id:
            msg = "DELETE operation requires bulletId"
            raise ValidationError(msg)
        if not self.delete(operation.bullet_id):
            logger.warning("Bullet %s not found for DELETE, skipping", operation.bullet_id)
            return False
        return True

    def _ensure_capacity(self) -> None:
        if len(self._bullets) >= self.max_size:
            msg = f"Playbook size limit reached ({self.max_size})"
            raise CapacityError(msg)

    def _resolve_query_embedding(
        self,
        query: str,
        use_embeddings: bool,
        query_embedding: Sequence[float] | None,
    ) -> Sequence[float] | None:
        if not use_embeddings:
            return None
        if query_embedding is not None:
            return query_embedding
        if self.embedder is None:
            return None
        try:
            return self.embedder(query)
        except Exception:
            logger.warning("Query embedding failed, falling back to text search", exc_info=True)
            return None

    @staticmethod
    def _validate_text(section: str, content: str) -> tuple[str, str]:
        section = (section or "").strip()
        content = (content or "").strip()
        if not section or not content:
            msg = "Section and content are required"
            raise ValidationError(msg)
        return section, content

    @staticmethod
    def _build_metadata(metadata: BulletMetadata | dict[str, Any] | None) -> BulletMetadata:
        if metadata is None:
            return BulletMetadata()
        if isinstance(metadata, BulletMetadata):
            return metadata.model_copy(deep=True)
        try:
            return BulletMetadata.model_validate(metadata)
        except pydantic.ValidationError as e:
            msg = f"Invalid bullet metadata: {e}"
            raise ValidationError(msg) from e

    @staticmethod
    def _coerce_update(updates: BulletUpdate | dict[str, Any]) -> BulletUpdate:
        if isinstance(updates, BulletUpdate):
            return updates
        try:
            return BulletUpdate.model_validate(updates)
        except pydantic.ValidationError as e:
            msg = f"Invalid bullet update: {e}"
            raise ValidationError(msg) from e

    @staticmethod
    def _has_required_fields(data: Any) -> bool:  # noqa: ANN401
        if not isinstance(data, dict):
            return False
        if any(not data.get(key) for key in ("id", "section", "content")):
            return False
        return isinstance(data.get("metadata"), dict)

    @staticmethod
    def _matches(bullet: Bullet, criteria: BulletFilter) -> bool:  # noqa: PLR0911
        meta = bullet.metadata
        if criteria.section is not None and bullet.section != criteria.section:
            return False
        if criteria.min_helpful_count is not None and meta.helpful_count < criteria.min_helpful_count:
            return False
        if criteria.max_harmful_count is not None and meta.harmful_count > criteria.max_harmful_count:
            return False
        if criteria.content_contains and criteria.content_contains.lower() not in bullet.content.lower():
            return False
        if criteria.created_after is not None and meta.created < criteria.created_after:
            return False
        if criteria.created_before is not None and meta.created > criteria.created_before:
            return False
        if criteria.used_after is not None and (meta.last_used is None or meta.last_used < criteria.used_after):
            return False
        return not (
            criteria.used_before is not None
            and (meta.last_used is None or meta.last_used > criteria.used_before)
        )
