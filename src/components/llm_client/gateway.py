"""Model Gatewayのインターフェースと、LangChainクライアントを束ねる実装."""

from collections.abc import Callable
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel

from src.components.llm_client.client import LLMClient
from src.components.llm_client.embedding_client import EmbeddingClient


class ChatMessage(BaseModel):
    """チャットメッセージ."""

    role: Literal["system", "user", "assistant"]
    content: str


class ChatOptions(BaseModel):
    """チャット呼び出しごとのオプション. Noneのフィールドはプロバイダ既定値を使う."""

    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    timeout: float | None = None


@runtime_checkable
class ChatGateway(Protocol):
    """チャット機能（必須）を持つゲートウェイ."""

    def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> str:
        """メッセージ列を送信し応答テキストを返す."""
        ...


@runtime_checkable
class EmbeddingGateway(Protocol):
    """埋め込み機能（任意）を持つゲートウェイ."""

    def embed(self, text: str) -> list[float]:
        """テキストの埋め込みベクトルを返す."""
        ...


def resolve_embedder(gateway: object) -> Callable[[str], list[float]] | None:
    """ゲートウェイの埋め込み機能を呼び出し時に解決する.

    Args:
        gateway: Model Gateway

    Returns:
        埋め込み関数. ゲートウェイが埋め込みを提供しない場合はNone.
    """
    embed = getattr(gateway, "embed", None)
    return embed if callable(embed) else None


def gateway_name(gateway: object) -> str:
    """ログ・Trajectory用のゲートウェイ名を返す."""
    return str(getattr(gateway, "name", type(gateway).__name__))


class ModelGateway:
    """LLMClientと任意のEmbeddingClientを束ねたゲートウェイ.

    埋め込みが設定されていない場合、embed属性はNoneになる.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        embedding_client: EmbeddingClient | None = None,
    ) -> None:
        """ModelGatewayを初期化する.

        Args:
            llm_client: チャット用クライアント
            embedding_client: 埋め込み用クライアント（任意）
        """
        self.llm_client = llm_client
        self.embedding_client = embedding_client
        self.embed: Callable[[str], list[float]] | None = (
            embedding_client.embed_query if embedding_client is not None else None
        )

    @property
    def name(self) -> str:
        """プロバイダ名を返す."""
        return self.llm_client.name

    def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> str:
        """メッセージ列を送信し応答テキストを返す.

        Args:
            messages: チャットメッセージのリスト
            options: 呼び出しオプション

        Returns:
            LLMの応答テキスト

        Raises:
            ProviderError: LLMリクエストが失敗した場合
        """
        options = options or ChatOptions()
        return self.llm_client.chat(
            [(message.role, message.content) for message in messages],
            **options.model_dump(exclude_none=True),
        )
