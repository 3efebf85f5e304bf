"""プロンプトテンプレートの読み込みと埋め込みのユーティリティ."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def load_template(prompts_dir: Path, name: str, fallback: str) -> str:
    """テンプレートファイルを読み込む.

    <prompts_dir>/<name>.txt が存在しない場合はフォールバックを返す.

    Args:
        prompts_dir: プロンプトテンプレートディレクトリ
        name: テンプレート名
        fallback: ハードコードのフォールバックテンプレート

    Returns:
        テンプレート文字列
    """
    template_path = prompts_dir / f"{name}.txt"
    if template_path.exists():
        return template_path.read_text(encoding="utf-8")

    logger.warning("No template file found at %s. Using fallback template.", template_path)
    return fallback


class TemplateCache:
    """ディレクトリ内のテンプレートを名前ごとに一度だけ読み込むキャッシュ."""

    def __init__(self, prompts_dir: Path) -> None:
        """TemplateCacheを初期化する.

        Args:
            prompts_dir: プロンプトテンプレートディレクトリ
        """
        self.prompts_dir = prompts_dir
        self._templates: dict[str, str] = {}

    def get(self, name: str, fallback: str) -> str:
        """テンプレートを返す. 初回のみload_templateで読み込む."""
        if name not in self._templates:
            self._templates[name] = load_template(self.prompts_dir, name, fallback)
        return self._templates[name]


def render(template: str, **values: str) -> str:
    """テンプレート中の {name} プレースホルダーを置換する.

    str.formatと異なり、JSONの例などに含まれる波括弧はそのまま残る.

    Args:
        template: テンプレート文字列
        **values: プレースホルダー名と値

    Returns:
        置換後の文字列
    """
    for key, value in values.items():
        template = template.replace(f"{{{key}}}", value)
    return template
