"""テスト共通のフィクスチャ."""

from collections.abc import Callable

import pytest

from src.components.llm_client.gateway import ChatMessage, ChatOptions
from src.components.playbook_store.store import PlaybookStore


class ScriptedGateway:
    """あらかじめ用意した応答を順番に返すModel Gatewayのフェイク.

    embeddingsを渡した場合のみembed属性を持つ.
    応答に例外インスタンスを入れるとその呼び出しで送出する.
    """

    def __init__(
        self,
        responses: list[str | Exception],
        embeddings: Callable[[str], list[float]] | None = None,
        name: str = "scripted",
    ) -> None:
        self.responses = list(responses)
        self.name = name
        self.calls: list[tuple[list[ChatMessage], ChatOptions | None]] = []
        self.embed_calls: list[str] = []
        self._embeddings = embeddings
        if embeddings is not None:
            self.embed = self._embed

    def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> str:
        self.calls.append((messages, options))
        if not self.responses:
            msg = "unexpected chat call"
            raise AssertionError(msg)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def _embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        return self._embeddings(text)


@pytest.fixture
def gateway_factory() -> type[ScriptedGateway]:
    return ScriptedGateway


@pytest.fixture
def store() -> PlaybookStore:
    return PlaybookStore()
