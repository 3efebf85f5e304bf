"""run_workflowスクリプトのクエリ処理のテスト."""

import pytest

from src.common.lib.errors import GenerationError
from src.scripts.run_workflow import run_queries


def test_run_queries_continues_after_failure(store):
    """失敗したクエリがあっても残りを処理し、それまでの学習結果を保持する."""
    processed = []

    def handle(query: str) -> None:
        processed.append(query)
        if query == "q2":
            msg = "provider down"
            raise GenerationError(msg)
        store.add("Testing", f"learned from {query}")

    failures = run_queries(["q1", "q2", "q3"], handle)

    assert failures == 1
    assert processed == ["q1", "q2", "q3"]
    assert [b.content for b in store.query()] == ["learned from q1", "learned from q3"]


def test_run_queries_propagates_unexpected_errors():
    """独自例外以外はそのまま送出する."""

    def handle(query: str) -> None:
        raise KeyError(query)

    with pytest.raises(KeyError):
        run_queries(["q1"], handle)
