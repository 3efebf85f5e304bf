"""YAML設定ファイルからPlaybookのセクション定義を読み込むローダー."""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_SECTIONS: tuple[str, ...] = (
    "Code Generation",
    "Testing",
    "Debugging",
    "Documentation",
    "Error Handling",
    "Performance",
    "Security",
    "Best Practices",
)


class SectionDefinition(BaseModel):
    """セクション定義モデル."""

    name: str
    description: str = ""


class SectionLoader:
    """セクション定義を読み込むローダークラス."""

    def __init__(self, config_path: str = "config/sections.yaml") -> None:
        """SectionLoaderを初期化する.

        Args:
            config_path: セクション定義ファイルのパス
        """
        self.config_path = Path(config_path)

    def load(self) -> list[SectionDefinition]:
        """セクション定義を読み込む.

        ファイルが存在しない、または sections キーが空の場合は
        組み込みのデフォルトセクションを返す.

        Returns:
            セクション定義のリスト

        Raises:
            yaml.YAMLError: YAMLの構文が不正な場合
        """
        if not self.config_path.exists():
            logger.warning("sections file not found at %s, using defaults", self.config_path)
            return self.defaults()

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        sections = data.get("sections", [])
        if not sections:
            return self.defaults()
        return [
            SectionDefinition(name=s) if isinstance(s, str) else SectionDefinition(**s)
            for s in sections
        ]

    @staticmethod
    def defaults() -> list[SectionDefinition]:
        """組み込みのデフォルトセクションを返す."""
        return [SectionDefinition(name=name) for name in DEFAULT_SECTIONS]
