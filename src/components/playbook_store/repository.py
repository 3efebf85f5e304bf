"""PlaybookStoreの内容をコンテキスト単位でJSON永続化するリポジトリ."""

import json
import logging
from pathlib import Path

from src.components.playbook_store.models import PlaybookSnapshot, utc_now
from src.components.playbook_store.store import Embedder, PlaybookStore

logger = logging.getLogger(__name__)


class PlaybookRepository:
    """PlaybookをJSON形式で永続化するリポジトリクラス.

    コンテキストごとに <data_dir>/<context_id>.json へ保存する.
    """

    def __init__(
        self,
        data_dir: str = "data/contexts",
        max_size: int = 1000,
        dedup_threshold: float = 0.85,
    ) -> None:
        """PlaybookRepositoryを初期化する.

        Args:
            data_dir: Playbookファイルの保存ディレクトリ
            max_size: 読み込んだストアの最大Bullet数
            dedup_threshold: 読み込んだストアの重複判定閾値
        """
        self.data_dir = Path(data_dir)
        self.max_size = max_size
        self.dedup_threshold = dedup_threshold

    def load(self, context_id: str, embedder: Embedder | None = None) -> PlaybookStore:
        """指定コンテキストのPlaybookを読み込む.

        Args:
            context_id: コンテキストID
            embedder: ストアに渡す埋め込み関数

        Returns:
            PlaybookStore. ファイルが存在しない場合は空のストア.
        """
        store = PlaybookStore(
            max_size=self.max_size,
            dedup_threshold=self.dedup_threshold,
            embedder=embedder,
        )
        path = self._path(context_id)
        if not path.exists():
            logger.info("No playbook file for context '%s', starting empty", context_id)
            return store

        snapshot = PlaybookSnapshot.model_validate(json.loads(path.read_text(encoding="utf-8")))
        store.import_bullets(snapshot.bullets)
        return store

    def save(self, context_id: str, store: PlaybookStore) -> Path:
        """PlaybookをJSONファイルに保存する.

        Args:
            context_id: コンテキストID
            store: 保存するPlaybookStore

        Returns:
            保存先のパス
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        snapshot = PlaybookSnapshot(
            context_id=context_id,
            updated_at=utc_now(),
            bullets=[bullet.model_dump(mode="json") for bullet in store.export()],
        )
        path = self._path(context_id)
        path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        logger.info("Saved %d bullets to %s", len(snapshot.bullets), path)
        return path

    def list_contexts(self) -> list[str]:
        """保存済みのコンテキストIDをソートして返す."""
        if not self.data_dir.exists():
            return []
        return sorted(path.stem for path in self.data_dir.glob("*.json"))

    def _path(self, context_id: str) -> Path:
        if not context_id or context_id == ".." or Path(context_id).name != context_id:
            msg = f"Invalid context id: {context_id!r}"
            raise ValueError(msg)
        return self.data_dir / f"{context_id}.json"
