"""LangChain ChatModelを使用したLLMリクエストクライアント."""

import logging
from collections.abc import Sequence
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.output_parsers import StrOutputParser

from src.common.lib.errors import ProviderError

logger = logging.getLogger(__name__)

_MESSAGE_TYPES: dict[str, type[BaseMessage]] = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}

# OpenAI互換APIを提供するローカル/外部エンドポイント
_OPENAI_COMPATIBLE_BASE_URLS = {
    "lmstudio": "http://localhost:1234/v1",
    "deepseek": "https://api.deepseek.com/v1",
}


def create_chat_model(provider: str, model: str, **kwargs) -> BaseChatModel:  # noqa: ANN003
    """プロバイダ名からChatModelを生成するファクトリ.

    Args:
        provider: プロバイダ名（openai / azure / bedrock / anthropic / lmstudio / deepseek）
        model: モデル名
        **kwargs: 追加のキーワード引数

    Returns:
        ChatModelインスタンス

    Raises:
        ValueError: 未知のプロバイダが指定された場合
    """
    kwargs = {k: v for k, v in kwargs.items() if v not in (None, "")}

    if provider == "openai":
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(model=model, **kwargs)
    if provider in _OPENAI_COMPATIBLE_BASE_URLS:
        from langchain_openai import ChatOpenAI

        kwargs.setdefault("base_url", _OPENAI_COMPATIBLE_BASE_URLS[provider])
        if provider == "lmstudio":
            # LM Studioはキーを検証しないがクライアント側で必須
            kwargs.setdefault("api_key", "lm-studio")
        return ChatOpenAI(model=model, **kwargs)
    if provider == "azure":
        from langchain_openai import AzureChatOpenAI

        return AzureChatOpenAI(model=model, **kwargs)
    if provider == "bedrock":
        from langchain_aws import ChatBedrock

        return ChatBedrock(model_id=model, **kwargs)
    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        return ChatAnthropic(model=model, **kwargs)
    msg = f"Unknown provider: {provider}"
    raise ValueError(msg)


class LLMClient:
    """LangChainのChatModelをラップするクライアントクラス."""

    def __init__(self, chat_model: BaseChatModel, name: str | None = None) -> None:
        """LLMClientを初期化する.

        Args:
            chat_model: LangChainのChatModel
            name: ログ出力用のプロバイダ名. 省略時はモデル名から推定する
        """
        self.chat_model = chat_model
        self.name = name or getattr(chat_model, "model_name", None) or type(chat_model).__name__

    def chat(self, messages: Sequence[tuple[str, str]], **options: Any) -> str:  # noqa: ANN401
        """(role, content)のメッセージ列でLLMにリクエストを送信する.

        Args:
            messages: (role, content)のリスト. roleはsystem / user / assistant
            **options: temperature, max_tokens, model, timeoutなど呼び出し単位の設定

        Returns:
            LLMの応答文字列

        Raises:
            ValueError: 未知のroleが含まれる場合
            ProviderError: LLMリクエストが失敗した場合
        """
        lc_messages = [self._to_message(role, content) for role, content in messages]
        runnable = self.chat_model.bind(**options) if options else self.chat_model
        chain = runnable | StrOutputParser()
        try:
            return chain.invoke(lc_messages)
        except Exception as e:
            logger.exception("LLM request failed")
            msg = f"LLM request failed: {e}"
            raise ProviderError(msg, provider=self.name) from e

    @staticmethod
    def _to_message(role: str, content: str) -> BaseMessage:
        message_type = _MESSAGE_TYPES.get(role)
        if message_type is None:
            msg = f"Unknown message role: {role}"
            raise ValueError(msg)
        return message_type(content=content)
