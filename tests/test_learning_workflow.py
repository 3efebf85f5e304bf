"""LearningWorkflowのテスト."""

import json

import pytest

from src.application.agents.curator import CuratorAgent, CuratorPromptBuilder
from src.application.agents.generator import GeneratorAgent, PromptBuilder
from src.application.agents.reflector import (
    ReflectionOptions,
    ReflectorAgent,
    ReflectorPromptBuilder,
)
from src.application.workflows.learning_workflow import LearningWorkflow
from src.common.lib.errors import GenerationError, ProviderError

_ANALYSIS = json.dumps(
    {
        "insights": [
            {
                "observation": "The answer sorted in place",
                "lesson": "Callers may still need the original order",
                "suggested_bullet": "Prefer sorted() when the input must stay unchanged",
                "confidence": 0.8,
                "section": "Algorithms",
            }
        ]
    }
)

_SYNTHESIS = json.dumps(
    {
        "operations": [
            {
                "type": "ADD",
                "bullet": {
                    "section": "Algorithms",
                    "content": "Prefer sorted() when the input must stay unchanged",
                },
            }
        ],
        "summary": "one new bullet",
    }
)


@pytest.fixture
def build_workflow(store, tmp_path):
    """1つのゲートウェイを3エージェントで共有するワークフローを作る."""

    def _build(gateway) -> LearningWorkflow:
        return LearningWorkflow(
            playbook_store=store,
            generator=GeneratorAgent(gateway, PromptBuilder(prompts_dir=str(tmp_path))),
            reflector=ReflectorAgent(gateway, ReflectorPromptBuilder(prompts_dir=str(tmp_path))),
            curator=CuratorAgent(gateway, CuratorPromptBuilder(prompts_dir=str(tmp_path))),
            reflection_options=ReflectionOptions(max_iterations=1),
        )

    return _build


# ---------------------------------------------------------------------------
# 統合テスト: generate → reflect → curate → apply
# ---------------------------------------------------------------------------


def test_run_learns_new_bullet(store, gateway_factory, build_workflow):
    """1回の実行でInsightがPlaybookのBulletとして追加される."""
    gateway = gateway_factory(["Call list.sort() on it.", _ANALYSIS, _SYNTHESIS])
    workflow = build_workflow(gateway)

    state = workflow.run("How do I sort a list?")

    assert state["trajectory"].response == "Call list.sort() on it."
    assert state["reflection"].iterations == 1
    assert state["curation"].statistics.adds == 1
    assert state["apply_result"].added == 1
    [bullet] = store.query({"section": "Algorithms"})
    assert bullet.content == "Prefer sorted() when the input must stay unchanged"
    assert bullet.metadata.helpful_count == 0
    assert gateway.responses == []


def test_second_run_uses_learned_bullet(store, gateway_factory, build_workflow):
    """学習済みBulletは次回の生成プロンプトに含まれ、帰属が記録される."""
    learned = store.add("Algorithms", "Prefer sorted() when the input must stay unchanged")
    answer = f"Use sorted(items).\n\nBULLET TRACKING:\n#helpful-{learned.id}\n"
    gateway = gateway_factory([answer, json.dumps({"insights": []})])
    workflow = build_workflow(gateway)

    state = workflow.run("How do I sort without mutating?")

    system_prompt = gateway.calls[0][0][0].content
    assert f"[{learned.id}] Prefer sorted()" in system_prompt
    assert state["trajectory"].bullets_helpful == (learned.id,)
    assert store.get(learned.id).metadata.helpful_count == 1


def test_run_ends_without_insights(store, gateway_factory, build_workflow):
    """Insightが得られなければキュレーションと適用を行わない."""
    gateway = gateway_factory(["Answer.", "Nothing notable in this interaction."])
    state = build_workflow(gateway).run("q")

    assert state["reflection"].insights == []
    assert state["curation"] is None
    assert state["apply_result"] is None
    assert store.count() == 0


def test_run_ends_without_operations(store, gateway_factory, build_workflow):
    """Delta操作が無ければ適用を行わない."""
    gateway = gateway_factory(["Answer.", _ANALYSIS, json.dumps({"operations": []})])
    state = build_workflow(gateway).run("q")

    assert state["curation"].summary.endswith("no changes recommended.")
    assert state["apply_result"] is None
    assert store.count() == 0


def test_run_propagates_generation_error(store, gateway_factory, build_workflow):
    """生成の失敗は呼び出し元へ送出され、Playbookは変化しない."""
    gateway = gateway_factory([ProviderError("down")])

    with pytest.raises(GenerationError):
        build_workflow(gateway).run("q")

    assert store.count() == 0
