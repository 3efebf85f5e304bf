"""CuratorAgentのテスト."""

import json

import pytest

from src.application.agents.curator import (
    CurationOptions,
    CuratorAgent,
    CuratorPromptBuilder,
    normalize_operation,
    parse_dedup_assessment,
    parse_operations,
    summarize,
)
from src.common.config.section_loader import SectionDefinition
from src.common.defs.curation import CurationStatistics
from src.common.defs.insight import Insight
from src.common.lib.errors import CurationError, ProviderError


def _insight(confidence: float | None = 0.8, bullet: str = "Prefer sorted() for new lists") -> Insight:
    return Insight(
        observation="The answer mutated the input",
        lesson="Avoid in-place sorting when the caller keeps the list",
        suggested_bullet=bullet,
        confidence=confidence,
        section="Algorithms",
    )


def _operations_json(*operations: dict) -> str:
    return json.dumps({"operations": list(operations), "summary": "s", "reasoning": "r"})


def _add(content: str, section: str = "Algorithms") -> dict:
    return {"type": "ADD", "bullet": {"section": section, "content": content}}


@pytest.fixture
def prompt_builder(tmp_path) -> CuratorPromptBuilder:
    return CuratorPromptBuilder(prompts_dir=str(tmp_path))


@pytest.fixture
def sections() -> list[SectionDefinition]:
    return [SectionDefinition(name="Algorithms", description="Sorting and searching")]


# ---------------------------------------------------------------------------
# ユニットテスト: 操作のパースと正規化
# ---------------------------------------------------------------------------


def test_parse_operations_structured_array():
    """トップレベルの配列も構造化出力として扱う."""
    result = parse_operations(json.dumps([_add("x")]))
    assert result.source == "structured"
    assert result.value == [_add("x")]


def test_parse_operations_text_fallback():
    """JSONが無い場合はadd/bulletと引用符付き内容の行をADDにする."""
    text = 'I would add a bullet: "Check for empty input first"\nNothing else to change.'
    result = parse_operations(text)

    assert result.source == "text"
    assert result.value == [
        {"type": "ADD", "bullet": {"section": "General", "content": "Check for empty input first"}}
    ]


def test_parse_operations_default():
    """何も得られない場合は空リスト."""
    result = parse_operations("The playbook already looks complete.")
    assert result.source == "default"
    assert result.value == []


def test_normalize_operation_add_assigns_id_and_fresh_metadata():
    """ADDはIDを生成し、メタデータをカウンター0で初期化する."""
    operation = normalize_operation(
        {"type": "add", "bullet": {"content": "  Use guards  ", "metadata": {"helpful_count": 9}}}
    )

    assert operation.type == "ADD"
    assert operation.bullet.id
    assert operation.bullet.section == "General"
    assert operation.bullet.content == "Use guards"
    assert operation.bullet.metadata.helpful_count == 0


@pytest.mark.parametrize("key", ["bulletId", "bullet_id"])
def test_normalize_operation_update_accepts_both_keys(key):
    """UPDATEはbulletIdとbullet_idのどちらでも対象を指定できる."""
    operation = normalize_operation({"type": "Update", key: "b-1", "updates": "not a dict"})

    assert operation.type == "UPDATE"
    assert operation.bullet_id == "b-1"
    assert operation.updates.content is None


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "ADD", "bullet": {"content": "   "}},
        {"type": "ADD", "bullet": "plain string"},
        {"type": "UPDATE", "updates": {"content": "x"}},
        {"type": "DELETE"},
        {"type": "RENAME", "bulletId": "b-1"},
        {"content": "no type"},
    ],
)
def test_normalize_operation_drops_invalid(raw):
    """必須項目が欠けた操作や不明な種別は破棄する."""
    assert normalize_operation(raw) is None


def test_parse_dedup_assessment_default():
    """解釈できない判定はUNIQUE/keep_separateになる."""
    result = parse_dedup_assessment("maybe?")
    assert result.source == "default"
    assert result.value.assessment == "UNIQUE"
    assert result.value.recommendation == "keep_separate"


def test_parse_dedup_assessment_normalizes_case():
    """assessmentは大文字、recommendationは小文字に揃える."""
    text = json.dumps({"assessment": "duplicate", "recommendation": "DISCARD", "related_bullets": ["a"]})
    result = parse_dedup_assessment(text)

    assert result.is_structured
    assert result.value.assessment == "DUPLICATE"
    assert result.value.recommendation == "discard"
    assert result.value.related_bullets == ["a"]


@pytest.mark.parametrize(
    ("count", "statistics", "expected"),
    [
        (
            1,
            CurationStatistics(adds=1),
            "Processed 1 insight and generated 1 operation: 1 new bullet.",
        ),
        (
            2,
            CurationStatistics(adds=2, updates=1, deletes=3),
            "Processed 2 insights and generated 6 operations: "
            "2 new bullets, 1 update, 3 deletions.",
        ),
        (
            2,
            CurationStatistics(),
            "Processed 2 insights and generated 0 operations: no changes recommended.",
        ),
    ],
)
def test_summarize(count, statistics, expected):
    """件数に応じて単数・複数形を使い分ける."""
    assert summarize(count, statistics) == expected


# ---------------------------------------------------------------------------
# ユニットテスト: プロンプト構築
# ---------------------------------------------------------------------------


def test_build_synthesis_includes_bullets_and_sections(store, prompt_builder, sections):
    """合成プロンプトに既存Bullet、Insight、セクションが含まれる."""
    bullet = store.add("Algorithms", "Use binary search on sorted data")

    prompt = prompt_builder.build_synthesis([_insight()], store.export(), sections)

    assert f"{bullet.id}: [Algorithms] Use binary search on sorted data" in prompt
    assert "Prefer sorted() for new lists" in prompt
    assert "- Algorithms: Sorting and searching" in prompt
    assert '"operations"' in prompt


def test_build_synthesis_empty_playbook(prompt_builder, sections):
    """Bulletが無い場合はその旨を記載する."""
    prompt = prompt_builder.build_synthesis([_insight()], [], sections)
    assert "No bullets currently in playbook" in prompt


# ---------------------------------------------------------------------------
# ユニットテスト: curate
# ---------------------------------------------------------------------------


def test_curate_without_insights(store, gateway_factory):
    """Insightが無い場合はゲートウェイを呼ばない."""
    gateway = gateway_factory([])
    result = CuratorAgent(gateway).curate([], store)

    assert result.operations == []
    assert result.summary == "No insights provided for curation"
    assert gateway.calls == []


def test_curate_filters_by_confidence(store, gateway_factory):
    """確信度が閾値未満または未設定のInsightは除外される."""
    gateway = gateway_factory([])
    agent = CuratorAgent(gateway, min_confidence=0.6)

    result = agent.curate([_insight(0.59), _insight(None)], store)

    assert result.summary == "No insights met the confidence threshold"
    assert gateway.calls == []


def test_curate_options_override_threshold(store, gateway_factory, prompt_builder, sections):
    """呼び出しオプションの閾値がエージェント既定値より優先される."""
    gateway = gateway_factory([_operations_json(_add("Keep inputs immutable"))])
    agent = CuratorAgent(gateway, prompt_builder, sections, min_confidence=0.9)

    result = agent.curate([_insight(0.7)], store, CurationOptions(min_confidence=0.5))

    assert result.statistics.adds == 1
    assert result.summary == "Processed 1 insight and generated 1 operation: 1 new bullet."
    assert store.count() == 0


def test_curate_normalizes_operations(store, gateway_factory, prompt_builder, sections):
    """不正な操作は捨て、種別ごとの件数を数える."""
    existing = store.add("Algorithms", "Old advice")
    response = _operations_json(
        _add("New advice"),
        {"type": "update", "bulletId": existing.id, "updates": {"content": "Better advice"}},
        {"type": "DELETE", "bullet_id": "gone"},
        {"type": "ADD", "bullet": {"content": ""}},
    )
    agent = CuratorAgent(gateway_factory([response]), prompt_builder, sections)

    result = agent.curate([_insight()], store)

    assert [op.type for op in result.operations] == ["ADD", "UPDATE", "DELETE"]
    assert result.statistics.model_dump() == {"adds": 1, "updates": 1, "deletes": 1}


def test_curate_default_chat_options(store, gateway_factory, prompt_builder, sections):
    """合成呼び出しの既定値は温度0.3、最大2000トークン."""
    gateway = gateway_factory([_operations_json()])
    CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    options = gateway.calls[0][1]
    assert (options.temperature, options.max_tokens) == (0.3, 2000)


def test_curate_wraps_synthesis_error(store, gateway_factory, prompt_builder):
    """合成呼び出しの失敗はCurationErrorになる."""
    failure = ProviderError("unavailable")
    agent = CuratorAgent(gateway_factory([failure]), prompt_builder)

    with pytest.raises(CurationError) as excinfo:
        agent.curate([_insight()], store)

    assert excinfo.value.cause is failure


# ---------------------------------------------------------------------------
# ユニットテスト: 重複検出
# ---------------------------------------------------------------------------


def _dedup_json(recommendation: str, assessment: str = "DUPLICATE") -> str:
    return json.dumps({"assessment": assessment, "recommendation": recommendation})


def _near_duplicate(_text: str) -> list[float]:
    return [0.1, 0.2, 0.31]


def test_curate_discards_duplicate(store, gateway_factory, prompt_builder, sections):
    """重複と判定されたADDは破棄される."""
    store.add("Algorithms", "Prefer sorted() over list.sort()", {"embedding": [0.1, 0.2, 0.3]})
    gateway = gateway_factory(
        [_operations_json(_add("Prefer sorted() to list.sort()")), _dedup_json("discard")],
        embeddings=_near_duplicate,
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    assert result.statistics.adds == 0
    assert result.operations == []
    assert gateway.embed_calls == ["Prefer sorted() to list.sort()"]
    dedup_prompt, dedup_options = gateway.calls[1]
    assert "Prefer sorted() over list.sort()" in dedup_prompt[0].content
    assert (dedup_options.temperature, dedup_options.max_tokens) == (0.2, 500)


def test_curate_merge_rewrites_to_update(store, gateway_factory, prompt_builder, sections):
    """mergeは既存Bulletへの内容追記のUPDATEになる."""
    target = store.add("Algorithms", "Prefer sorted().", {"embedding": [0.1, 0.2, 0.3]})
    gateway = gateway_factory(
        [_operations_json(_add("Mention the key argument")), _dedup_json("merge", "SIMILAR")],
        embeddings=_near_duplicate,
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    [operation] = result.operations
    assert operation.type == "UPDATE"
    assert operation.bullet_id == target.id
    assert operation.updates.content == "Prefer sorted(). Mention the key argument"


def test_curate_update_replaces_content(store, gateway_factory, prompt_builder, sections):
    """updateは既存Bulletの内容と埋め込みを置き換えるUPDATEになる."""
    target = store.add("Algorithms", "Prefer sorted()", {"embedding": [0.1, 0.2, 0.3]})
    gateway = gateway_factory(
        [_operations_json(_add("Prefer sorted(key=...)")), _dedup_json("update", "SIMILAR")],
        embeddings=_near_duplicate,
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    [operation] = result.operations
    assert operation.bullet_id == target.id
    assert operation.updates.content == "Prefer sorted(key=...)"
    assert operation.updates.metadata == {"embedding": [0.1, 0.2, 0.31]}
    assert result.statistics.updates == 1


def test_curate_unique_add_carries_embedding(store, gateway_factory, prompt_builder, sections):
    """類似Bulletが無いADDは埋め込みを付けて残る."""
    store.add("Algorithms", "Unrelated", {"embedding": [1.0, 0.0, 0.0]})
    gateway = gateway_factory(
        [_operations_json(_add("Something new"))],
        embeddings=lambda _: [0.0, 0.0, 1.0],
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    [operation] = result.operations
    assert operation.type == "ADD"
    assert operation.bullet.metadata.embedding == [0.0, 0.0, 1.0]
    assert len(gateway.calls) == 1


def test_curate_assessment_failure_keeps_add(store, gateway_factory, prompt_builder, sections):
    """重複判定の呼び出しが失敗してもADDは残る."""
    store.add("Algorithms", "Prefer sorted()", {"embedding": [0.1, 0.2, 0.3]})
    gateway = gateway_factory(
        [_operations_json(_add("Prefer sorted() again")), ProviderError("timeout")],
        embeddings=_near_duplicate,
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    assert [op.type for op in result.operations] == ["ADD"]


def test_curate_embedding_failure_keeps_add(store, gateway_factory, prompt_builder, sections):
    """埋め込みの失敗時は重複検出を諦めてADDを残す."""

    def broken(_text: str) -> list[float]:
        msg = "embedding service down"
        raise RuntimeError(msg)

    gateway = gateway_factory([_operations_json(_add("Anything"))], embeddings=broken)
    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    assert result.statistics.adds == 1
    assert result.operations[0].bullet.metadata.embedding is None


def test_curate_dedup_disabled(store, gateway_factory, prompt_builder, sections):
    """重複検出を無効にすると埋め込みを計算しない."""
    store.add("Algorithms", "Prefer sorted()", {"embedding": [0.1, 0.2, 0.3]})
    gateway = gateway_factory(
        [_operations_json(_add("Prefer sorted() again"))], embeddings=_near_duplicate
    )

    result = CuratorAgent(gateway, prompt_builder, sections).curate(
        [_insight()], store, CurationOptions(enable_deduplication=False)
    )

    assert result.statistics.adds == 1
    assert gateway.embed_calls == []


def test_curate_without_embedding_capability(store, gateway_factory, prompt_builder, sections):
    """埋め込みを持たないゲートウェイでは重複検出を行わない."""
    gateway = gateway_factory([_operations_json(_add("Prefer sorted() again"))])
    result = CuratorAgent(gateway, prompt_builder, sections).curate([_insight()], store)

    assert result.statistics.adds == 1
    assert len(gateway.calls) == 1
