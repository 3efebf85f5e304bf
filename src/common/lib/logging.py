"""ロギング設定ユーティリティ."""

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def getLogger(name: str, level: str | None = None) -> logging.Logger:  # noqa: N802
    """指定された名前のロガーを取得する.

    呼び出し時にlogging.basicConfig()を実行してから、ロガーを返す.
    レベルが指定されない場合は環境変数ACE_LOG_LEVELを参照する.

    Args:
        name: ロガー名（通常は__name__を使用）
        level: ログレベル名（DEBUG / INFO / WARNING / ERROR）

    Returns:
        ロガーインスタンス
    """
    level_name = (level or os.getenv("ACE_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )
    return logging.getLogger(name)
