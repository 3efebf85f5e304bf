"""GeneratorAgentのテスト."""

from datetime import UTC, datetime

import pytest

from src.application.agents.generator import (
    GenerationOptions,
    GeneratorAgent,
    PromptBuilder,
    extract_attribution,
)
from src.common.lib.errors import EmptyQueryError, GenerationError, ProviderError

# ---------------------------------------------------------------------------
# ユニットテスト: 帰属タグの抽出
# ---------------------------------------------------------------------------


def test_extract_attribution_reads_tracking_section():
    """BULLET TRACKINGセクションのタグを出現順・重複なしで抽出する."""
    response = (
        "Use sorted().\n"
        "#helpful-ignored this tag is outside the section\n"
        "\n"
        "BULLET TRACKING:\n"
        "#helpful-abc123 - relevant\n"
        "#harmful-def456 - not applicable\n"
        "#helpful-abc123 - repeated\n"
        "\n"
        "#helpful-after-blank\n"
    )
    attribution = extract_attribution(response)
    assert attribution.helpful == ["abc123"]
    assert attribution.harmful == ["def456"]


def test_extract_attribution_without_section():
    """セクションが無い応答は空の帰属になり、エラーにならない."""
    attribution = extract_attribution("Just an answer #helpful-abc")
    assert attribution.helpful == []
    assert attribution.harmful == []


def test_extract_attribution_markdown_header_and_blank_line():
    """装飾付きヘッダーや直後の空行を許容する."""
    response = "**Bullet Tracking:**\n\n- #helpful-0f1e-2d3c\n- #HARMFUL-x_9\n"
    attribution = extract_attribution(response)
    assert attribution.helpful == ["0f1e-2d3c"]
    assert attribution.harmful == ["x_9"]


def test_extract_attribution_inline_with_header():
    """ヘッダーと同じ行のタグも拾う."""
    attribution = extract_attribution("BULLET TRACKING: #helpful-a1 #harmful-b2")
    assert attribution.helpful == ["a1"]
    assert attribution.harmful == ["b2"]


# ---------------------------------------------------------------------------
# ユニットテスト: プロンプト構築
# ---------------------------------------------------------------------------


def test_prompt_builder_groups_by_section(store, tmp_path):
    """Bulletはセクションごとに出現順でまとめられる."""
    a = store.add("Testing", "Use fixtures")
    b = store.add("Security", "Escape input")
    c = store.add("Testing", "Avoid sleeps")
    builder = PromptBuilder(prompts_dir=str(tmp_path))

    text = builder.format_bullets([a, b, c])

    assert text == (
        f"## Testing\n- [{a.id}] Use fixtures\n- [{c.id}] Avoid sleeps\n\n"
        f"## Security\n- [{b.id}] Escape input"
    )


def test_prompt_builder_custom_prompt(tmp_path):
    """カスタムプロンプトの{bullets}が置換される."""
    builder = PromptBuilder(prompts_dir=str(tmp_path))
    assert builder.build([], "Rules:\n{bullets}") == "Rules:\nNo guidelines available yet."


def test_prompt_builder_template_file(tmp_path):
    """system.txtが存在すればそれを使う."""
    (tmp_path / "system.txt").write_text("FILE {bullets}", encoding="utf-8")
    builder = PromptBuilder(prompts_dir=str(tmp_path))
    assert builder.build([]) == "FILE No guidelines available yet."


# ---------------------------------------------------------------------------
# ユニットテスト: generate
# ---------------------------------------------------------------------------


def test_generate_empty_store(store, gateway_factory, tmp_path):
    """空のストアではbullets_usedが空で、応答がそのまま記録される."""
    gateway = gateway_factory(["Use sorted(items)."])
    agent = GeneratorAgent(gateway, PromptBuilder(prompts_dir=str(tmp_path)))

    trajectory = agent.generate("How do I sort a list?", store)

    assert trajectory.bullets_used == ()
    assert trajectory.response == "Use sorted(items)."
    assert trajectory.metadata.model == "scripted"
    assert trajectory.metadata.tokens_used == 10
    messages, _ = gateway.calls[0]
    assert [m.role for m in messages] == ["system", "user"]
    assert messages[1].content == "How do I sort a list?"
    assert "No guidelines available yet." in messages[0].content


@pytest.mark.parametrize("query", ["", "   \n"])
def test_generate_rejects_empty_query(store, gateway_factory, query):
    """空または空白のみのクエリはEmptyQueryError."""
    gateway = gateway_factory([])
    with pytest.raises(EmptyQueryError):
        GeneratorAgent(gateway).generate(query, store)
    assert gateway.calls == []


def test_generate_records_feedback(store, gateway_factory, tmp_path):
    """応答の帰属タグがストアのカウンターに反映される."""
    good = store.add("Testing", "Write a failing test first")
    bad = store.add("Debugging", "Print everything")
    response = f"Answer.\n\nBULLET TRACKING:\n#helpful-{good.id}\n#harmful-{bad.id}\n#helpful-unknown\n"
    agent = GeneratorAgent(gateway_factory([response]), PromptBuilder(prompts_dir=str(tmp_path)))

    trajectory = agent.generate("How do I fix this bug?", store)

    assert set(trajectory.bullets_used) == {good.id, bad.id}
    assert trajectory.bullets_helpful == (good.id, "unknown")
    assert trajectory.bullets_harmful == (bad.id,)
    assert store.get(good.id).metadata.helpful_count == 1
    assert store.get(bad.id).metadata.harmful_count == 1
    assert store.get(good.id).metadata.last_used is not None


def test_generate_passes_options(store, gateway_factory, tmp_path):
    """呼び出しオプションがゲートウェイへ渡され、モデル名がTrajectoryに残る."""
    gateway = gateway_factory(["ok"])
    agent = GeneratorAgent(gateway, PromptBuilder(prompts_dir=str(tmp_path)))

    trajectory = agent.generate(
        "q",
        store,
        GenerationOptions(temperature=0.1, max_tokens=50, model="custom-model"),
    )

    _, options = gateway.calls[0]
    assert options.temperature == 0.1
    assert options.max_tokens == 50
    assert trajectory.metadata.model == "custom-model"


def test_generate_wraps_gateway_error(store, gateway_factory):
    """ゲートウェイの失敗はcauseを保持したGenerationErrorになる."""
    failure = ProviderError("timeout", provider="scripted")
    agent = GeneratorAgent(gateway_factory([failure]))

    with pytest.raises(GenerationError) as excinfo:
        agent.generate("q", store)

    assert excinfo.value.cause is failure
    assert excinfo.value.__cause__ is failure


# ---------------------------------------------------------------------------
# ユニットテスト: Bullet選択
# ---------------------------------------------------------------------------


def test_select_bullets_ordering(store, gateway_factory):
    """優先セクション → 有用度 → 最終利用日時の順に並ぶ."""
    unused = store.add("Testing", "unused")
    harmful = store.add("Testing", "harmful", {"harmful_count": 2})
    helpful = store.add("Testing", "helpful", {"helpful_count": 2})
    priority = store.add("Security", "priority", {"harmful_count": 5})
    agent = GeneratorAgent(gateway_factory([]))

    selected = agent.select_bullets(store, GenerationOptions(priority_sections=["Security"]))

    assert [b.id for b in selected] == [priority.id, helpful.id, unused.id, harmful.id]


def test_select_bullets_recency_breaks_ties(store, gateway_factory):
    """有用度が同じ場合は最近利用されたBulletが先になる."""
    older = store.add(
        "Testing", "older", {"helpful_count": 1, "last_used": datetime(2024, 1, 1, tzinfo=UTC)}
    )
    newer = store.add(
        "Testing", "newer", {"helpful_count": 1, "last_used": datetime(2025, 1, 1, tzinfo=UTC)}
    )
    agent = GeneratorAgent(gateway_factory([]))

    selected = agent.select_bullets(store, GenerationOptions())

    assert [b.id for b in selected] == [newer.id, older.id]


def test_select_bullets_respects_max(store, gateway_factory):
    """max_bullets件まで選択される."""
    for i in range(5):
        store.add("Testing", f"bullet {i}")
    agent = GeneratorAgent(gateway_factory([]))
    assert len(agent.select_bullets(store, GenerationOptions(max_bullets=3))) == 3


def test_trajectory_attribution_is_immutable(store, gateway_factory, tmp_path):
    """Trajectoryの帰属リストは生成後に変更できない."""
    bullet = store.add("Testing", "Write a failing test first")
    response = f"Answer.\n\nBULLET TRACKING:\n#helpful-{bullet.id}\n"
    agent = GeneratorAgent(gateway_factory([response]), PromptBuilder(prompts_dir=str(tmp_path)))

    trajectory = agent.generate("q", store)

    assert isinstance(trajectory.bullets_used, tuple)
    with pytest.raises(AttributeError):
        trajectory.bullets_helpful.append("forged")
