"""LangChain Embeddingsモデルのラッパー."""

import logging

from langchain_core.embeddings import Embeddings

from src.common.lib.errors import ProviderError

logger = logging.getLogger(__name__)


def create_embedding_client(
    enabled: bool,
    model: str,
    api_key: str = "",
) -> "EmbeddingClient | None":
    """設定からEmbeddingClientを生成する.

    Args:
        enabled: 埋め込みを有効にするか
        model: OpenAIの埋め込みモデル名
        api_key: APIキー

    Returns:
        EmbeddingClient. 無効な場合はNone.
    """
    if not enabled:
        return None

    from langchain_openai import OpenAIEmbeddings

    kwargs = {"api_key": api_key} if api_key else {}
    return EmbeddingClient(model=OpenAIEmbeddings(model=model, **kwargs))


class EmbeddingClient:
    """LangChainのEmbeddingsモデルをラップするクライアントクラス."""

    def __init__(self, model: Embeddings) -> None:
        """EmbeddingClientを初期化する.

        Args:
            model: LangChainのEmbeddingsモデル
        """
        self.model = model

    def embed_query(self, text: str) -> list[float]:
        """テキストのembeddingを生成する.

        Args:
            text: 対象テキスト

        Returns:
            embeddingベクトル

        Raises:
            ProviderError: 埋め込みリクエストが失敗した場合
        """
        try:
            return list(self.model.embed_query(text))
        except Exception as e:
            logger.exception("Embedding request failed")
            msg = f"Embedding request failed: {e}"
            raise ProviderError(msg, provider=type(self.model).__name__) from e
