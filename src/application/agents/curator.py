"""Curatorエージェントとプロンプト構築の実装."""

import json
import logging
import re
import textwrap
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.common.config.section_loader import SectionDefinition, SectionLoader
from src.common.defs.curation import CurationResult, CurationStatistics, DedupAssessment
from src.common.defs.insight import Insight
from src.common.lib.errors import CurationError
from src.common.lib.output_parser import ParseResult, extract_json
from src.common.lib.prompt_template import TemplateCache, render
from src.components.llm_client.gateway import (
    ChatGateway,
    ChatMessage,
    ChatOptions,
    resolve_embedder,
)
from src.components.playbook_store.models import (
    Bullet,
    BulletMetadata,
    BulletUpdate,
    DeltaOperation,
    new_bullet_id,
)
from src.components.playbook_store.store import PlaybookStore

logger = logging.getLogger(__name__)

DEFAULT_SECTION = "General"

_QUOTED = re.compile(r"[\"']([^\"']+)[\"']")


class CurationOptions(BaseModel):
    """curateの呼び出しオプション. Noneはエージェントの既定値を使う."""

    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    enable_deduplication: bool | None = None
    dedup_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    timeout: float | None = None


def _scan_operations(text: str) -> list[dict[str, Any]]:
    """「add ... bullet ... "内容"」の行からADD操作を抽出する."""
    operations = []
    for line in text.splitlines():
        lowered = line.lower()
        if "add" not in lowered or "bullet" not in lowered:
            continue
        match = _QUOTED.search(line)
        if match is None:
            continue
        operations.append(
            {
                "type": "ADD",
                "bullet": {"section": DEFAULT_SECTION, "content": match.group(1)},
            }
        )
    return operations


def parse_operations(text: str) -> ParseResult[list[dict[str, Any]]]:
    """LLM応答から未正規化のDelta操作をパースする.

    1. JSON（{"operations": [...]} または配列）として解釈
    2. 失敗した場合は add/bullet と引用符付きの内容を含む行を走査
    3. どちらでも得られなければ空リスト

    Args:
        text: LLMの応答テキスト

    Returns:
        操作辞書のリストと取得元のタグ
    """
    data = extract_json(text)
    items = data.get("operations") if isinstance(data, dict) else data
    if isinstance(items, list) and all(isinstance(item, dict) for item in items):
        return ParseResult(items, "structured")

    logger.warning("Failed to parse operations JSON, attempting text extraction")
    operations = _scan_operations(text)
    if operations:
        return ParseResult(operations, "text")
    return ParseResult([], "default")


def normalize_operation(raw: dict[str, Any]) -> DeltaOperation | None:
    """操作辞書をDeltaOperationに正規化する.

    - ADD: contentが必須. IDが無ければ生成し、メタデータはカウンター0で初期化
    - UPDATE: bulletIdが必須. updatesが無ければ空の更新
    - DELETE: bulletIdが必須
    種別が不明、または必須項目が欠けた操作はNoneを返す.

    Args:
        raw: LLMが出力した操作辞書

    Returns:
        正規化されたDeltaOperation. 破棄する場合はNone.
    """
    op_type = str(raw.get("type") or "").strip().upper()
    bullet_id = raw.get("bulletId") or raw.get("bullet_id")

    try:
        if op_type == "ADD":
            bullet = raw.get("bullet")
            if not isinstance(bullet, dict):
                return None
            content = str(bullet.get("content") or "").strip()
            if not content:
                return None
            return DeltaOperation(
                type="ADD",
                bullet=Bullet(
                    id=str(bullet.get("id") or new_bullet_id()),
                    section=str(bullet.get("section") or "").strip() or DEFAULT_SECTION,
                    content=content,
                    metadata=BulletMetadata(),
                ),
            )

        if op_type == "UPDATE" and bullet_id:
            updates = raw.get("updates")
            return DeltaOperation(
                type="UPDATE",
                bullet_id=str(bullet_id),
                updates=BulletUpdate.model_validate(updates if isinstance(updates, dict) else {}),
            )

        if op_type == "DELETE" and bullet_id:
            return DeltaOperation(type="DELETE", bullet_id=str(bullet_id))
    except PydanticValidationError as e:
        logger.warning("Dropping malformed %s operation: %s", op_type, e)
        return None

    logger.debug("Dropping operation with unknown type or missing fields: %s", raw)
    return None


def parse_dedup_assessment(text: str) -> ParseResult[DedupAssessment]:
    """重複判定の応答をパースする. 解釈できない場合はUNIQUE/keep_separate.

    Args:
        text: LLMの応答テキスト

    Returns:
        重複判定と取得元のタグ
    """
    data = extract_json(text)
    if isinstance(data, dict):
        try:
            related = data.get("related_bullets") or []
            return ParseResult(
                DedupAssessment(
                    assessment=str(data.get("assessment") or "UNIQUE").upper(),
                    related_bullets=[str(item) for item in related],
                    recommendation=str(data.get("recommendation") or "keep_separate").lower(),
                    reasoning=str(data.get("reasoning") or ""),
                ),
                "structured",
            )
        except (PydanticValidationError, TypeError) as e:
            logger.warning("Malformed deduplication assessment: %s", e)

    return ParseResult(
        DedupAssessment(reasoning="Assessment could not be parsed, treating as unique"),
        "default",
    )


def summarize(insight_count: int, statistics: CurationStatistics) -> str:
    """キュレーション結果の要約文を作成する.

    Args:
        insight_count: 処理したInsight数
        statistics: 操作種別ごとの件数

    Returns:
        単数・複数形を考慮した要約文
    """

    def plural(count: int, word: str) -> str:
        return f"{count} {word}{'' if count == 1 else 's'}"

    total = statistics.adds + statistics.updates + statistics.deletes
    parts = []
    if statistics.adds:
        parts.append(plural(statistics.adds, "new bullet"))
    if statistics.updates:
        parts.append(plural(statistics.updates, "update"))
    if statistics.deletes:
        parts.append(plural(statistics.deletes, "deletion"))

    detail = ", ".join(parts) if parts else "no changes recommended"
    return (
        f"Processed {plural(insight_count, 'insight')} and generated "
        f"{plural(total, 'operation')}: {detail}."
    )


class CuratorPromptBuilder:
    """Curator用プロンプトテンプレートの読み込みと構築を行うビルダー.

    テンプレートは synthesis / dedup の2種類.
    """

    def __init__(self, prompts_dir: str = "prompts/curator") -> None:
        """CuratorPromptBuilderを初期化する.

        Args:
            prompts_dir: プロンプトテンプレートディレクトリのパス
        """
        self.prompts_dir = Path(prompts_dir)
        self.templates = TemplateCache(self.prompts_dir)

    def build_synthesis(
        self,
        insights: list[Insight],
        bullets: list[Bullet],
        sections: list[SectionDefinition],
    ) -> str:
        """Delta生成用プロンプト文字列を構築する.

        Args:
            insights: 確信度で絞り込んだInsightリスト
            bullets: 現在のPlaybookのBulletリスト
            sections: セクション定義リスト

        Returns:
            構築されたプロンプト文字列
        """
        template = self.templates.get("synthesis", self._fallback_synthesis())
        return render(
            template,
            current_bullets=self._format_bullets(bullets),
            insights=json.dumps(
                [insight.model_dump() for insight in insights],
                ensure_ascii=False,
                indent=2,
            ),
            sections=self._format_sections(sections),
        )

    def build_dedup(self, content: str, similar: list[Bullet]) -> str:
        """重複判定用プロンプト文字列を構築する.

        Args:
            content: 追加候補のBullet内容
            similar: 類似する既存Bulletリスト

        Returns:
            構築されたプロンプト文字列
        """
        template = self.templates.get("dedup", self._fallback_dedup())
        return render(
            template,
            new_bullet_content=content,
            existing_bullets="\n".join(f"{bullet.id}: {bullet.content}" for bullet in similar),
        )

    def _format_bullets(self, bullets: list[Bullet]) -> str:
        """Bulletリストをフォーマットする.

        Args:
            bullets: Bulletリスト

        Returns:
            "id: [section] content" 形式の改行区切り文字列
        """
        if not bullets:
            return "No bullets currently in playbook"
        return "\n".join(f"{bullet.id}: [{bullet.section}] {bullet.content}" for bullet in bullets)

    def _format_sections(self, sections: list[SectionDefinition]) -> str:
        """セクション定義リストをフォーマットする.

        Args:
            sections: セクション定義リスト

        Returns:
            改行区切りのセクション文字列
        """
        return "\n".join(
            f"- {section.name}: {section.description}" if section.description else f"- {section.name}"
            for section in sections
        )

    def _fallback_synthesis(self) -> str:
        """Delta生成用のフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            You are a playbook curator. Synthesize insights into concrete actions
            for improving the playbook.

            CURRENT PLAYBOOK BULLETS:
            {current_bullets}

            NEW INSIGHTS TO PROCESS:
            {insights}

            AVAILABLE SECTIONS:
            {sections}

            Determine what changes should be made to the playbook:
            1. ADD: Create new bullets from insights that introduce novel guidance
            2. UPDATE: Modify existing bullets that could be improved based on insights
            3. DELETE: Remove bullets that have proven consistently harmful or obsolete

            For each insight, consider:
            - Is this guidance already covered by an existing bullet?
            - Would this insight improve an existing bullet?
            - Is this insight actionable and specific enough?

            Respond in JSON format:
            {
              "operations": [
                {"type": "ADD", "bullet": {"section": "...", "content": "..."}},
                {"type": "UPDATE", "bulletId": "existing-id", "updates": {"content": "..."}},
                {"type": "DELETE", "bulletId": "obsolete-id"}
              ],
              "summary": "...",
              "reasoning": "..."
            }
            """
        ).strip()

    def _fallback_dedup(self) -> str:
        """重複判定用のフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            Compare the following bullet content to existing bullets to detect
            duplicates or very similar content:

            NEW BULLET CONTENT:
            {new_bullet_content}

            EXISTING BULLETS:
            {existing_bullets}

            Determine if the new bullet is:
            1. DUPLICATE: Nearly identical to an existing bullet
            2. SIMILAR: Covers similar ground but adds value
            3. UNIQUE: Introduces new guidance not covered elsewhere

            Respond in JSON format:
            {
              "assessment": "DUPLICATE|SIMILAR|UNIQUE",
              "related_bullets": ["bullet-id-1"],
              "recommendation": "merge|update|keep_separate|discard",
              "reasoning": "..."
            }
            """
        ).strip()


class CuratorAgent:
    """InsightsをDelta操作に変換するエージェント."""

    def __init__(  # noqa: PLR0913
        self,
        gateway: ChatGateway,
        prompt_builder: CuratorPromptBuilder | None = None,
        sections: list[SectionDefinition] | None = None,
        min_confidence: float = 0.5,
        enable_deduplication: bool = True,
        dedup_threshold: float = 0.85,
    ) -> None:
        """CuratorAgentを初期化する.

        Args:
            gateway: Model Gateway
            prompt_builder: プロンプト構築ビルダー
            sections: 合成プロンプトに渡すセクション定義
            min_confidence: Insightの確信度の下限
            enable_deduplication: ADD操作の重複検出を行うか
            dedup_threshold: 重複とみなす類似度の下限
        """
        self.gateway = gateway
        self.prompt_builder = prompt_builder or CuratorPromptBuilder()
        self.sections = sections if sections is not None else SectionLoader.defaults()
        self.min_confidence = min_confidence
        self.enable_deduplication = enable_deduplication
        self.dedup_threshold = dedup_threshold

    def curate(
        self,
        insights: list[Insight],
        playbook_store: PlaybookStore,
        options: CurationOptions | None = None,
    ) -> CurationResult:
        """InsightsからDelta操作を生成する. Playbookへの適用は行わない.

        処理フロー:
            1. 確信度でInsightを絞り込み
            2. 現在のBulletとInsightから合成プロンプトを構築しLLMを呼び出し
            3. 操作をパースし正規化
            4. (有効時) ADD操作の重複検出と解決
            5. 要約と統計を生成

        Args:
            insights: Reflectorが抽出したInsightリスト
            playbook_store: 参照するPlaybookストア
            options: キュレーションオプション

        Returns:
            Delta操作、要約、統計

        Raises:
            CurationError: 合成のゲートウェイ呼び出しが失敗した場合
        """
        if not insights:
            return CurationResult(summary="No insights provided for curation")

        options = options or CurationOptions()
        min_confidence = (
            options.min_confidence if options.min_confidence is not None else self.min_confidence
        )
        started = time.perf_counter()

        accepted = [
            insight
            for insight in insights
            if insight.confidence is not None and insight.confidence >= min_confidence
        ]
        if not accepted:
            return CurationResult(summary="No insights met the confidence threshold")

        prompt = self.prompt_builder.build_synthesis(
            accepted, playbook_store.export(), self.sections
        )
        response = self._synthesize(prompt, options)

        operations = [
            operation
            for raw in parse_operations(response).value
            if (operation := normalize_operation(raw)) is not None
        ]
        operations = self._deduplicate(operations, playbook_store, options)

        statistics = CurationStatistics(
            adds=sum(1 for op in operations if op.type == "ADD"),
            updates=sum(1 for op in operations if op.type == "UPDATE"),
            deletes=sum(1 for op in operations if op.type == "DELETE"),
        )
        logger.info(
            "Curation completed in %.2fs (insights=%d, operations=%d)",
            time.perf_counter() - started,
            len(accepted),
            len(operations),
        )
        return CurationResult(
            operations=operations,
            summary=summarize(len(accepted), statistics),
            statistics=statistics,
        )

    def _synthesize(self, prompt: str, options: CurationOptions) -> str:
        """合成プロンプトでゲートウェイを呼び出す. 失敗はCurationErrorに包む."""
        try:
            return self.gateway.chat(
                [ChatMessage(role="user", content=prompt)],
                self._chat_options(options, temperature=0.3, max_tokens=2000),
            )
        except Exception as e:
            logger.exception("Curator synthesis call failed")
            msg = f"Failed to curate insights: {e}"
            raise CurationError(msg, cause=e) from e

    def _deduplicate(
        self,
        operations: list[DeltaOperation],
        playbook_store: PlaybookStore,
        options: CurationOptions,
    ) -> list[DeltaOperation]:
        """ADD操作ごとに重複検出を行い、推奨に従って書き換える.

        重複検出が無効、またはゲートウェイが埋め込みを提供しない場合はそのまま返す.
        """
        enabled = (
            options.enable_deduplication
            if options.enable_deduplication is not None
            else self.enable_deduplication
        )
        if not enabled:
            return operations

        embed = resolve_embedder(self.gateway)
        if embed is None:
            logger.debug("Gateway has no embedding capability, skipping deduplication")
            return operations

        threshold = (
            options.dedup_threshold
            if options.dedup_threshold is not None
            else self.dedup_threshold
        )
        resolved = []
        for operation in operations:
            if operation.type != "ADD" or operation.bullet is None:
                resolved.append(operation)
                continue
            rewritten = self._resolve_add(operation, embed, playbook_store, threshold, options)
            if rewritten is not None:
                resolved.append(rewritten)
        return resolved

    def _resolve_add(  # noqa: PLR0913
        self,
        operation: DeltaOperation,
        embed: Callable[[str], list[float]],
        playbook_store: PlaybookStore,
        threshold: float,
        options: CurationOptions,
    ) -> DeltaOperation | None:
        """単一のADD操作の重複を解決する.

        埋め込みや判定が失敗した場合はADDのまま残す.

        Returns:
            書き換え後の操作. discardの場合はNone.
        """
        bullet = operation.bullet
        try:
            embedding = embed(bullet.content)
            similar = playbook_store.find_similar(embedding, threshold)
        except Exception:
            logger.warning("Deduplication check failed, proceeding with add", exc_info=True)
            return operation

        if not similar:
            bullet.metadata.embedding = embedding
            return operation

        assessment = self._assess_duplicate(bullet.content, similar, options)
        target = similar[0]
        logger.debug(
            "Deduplication: %s -> %s (target=%s)",
            assessment.assessment,
            assessment.recommendation,
            target.id,
        )

        if assessment.recommendation == "discard":
            return None
        if assessment.recommendation == "merge":
            return DeltaOperation(
                type="UPDATE",
                bullet_id=target.id,
                updates=BulletUpdate(
                    content=f"{target.content.rstrip('.')}. {bullet.content}",
                ),
            )
        if assessment.recommendation == "update":
            return DeltaOperation(
                type="UPDATE",
                bullet_id=target.id,
                updates=BulletUpdate(content=bullet.content, metadata={"embedding": embedding}),
            )

        bullet.metadata.embedding = embedding
        return operation

    def _assess_duplicate(
        self,
        content: str,
        similar: list[Bullet],
        options: CurationOptions,
    ) -> DedupAssessment:
        """重複判定をLLMに依頼する. 失敗した場合はUNIQUE/keep_separateとする."""
        prompt = self.prompt_builder.build_dedup(content, similar)
        try:
            response = self.gateway.chat(
                [ChatMessage(role="user", content=prompt)],
                self._chat_options(options, temperature=0.2, max_tokens=500),
            )
        except Exception:
            logger.warning("Deduplication assessment failed, treating as unique", exc_info=True)
            return DedupAssessment(reasoning="Assessment failed, treating as unique")
        return parse_dedup_assessment(response).value

    @staticmethod
    def _chat_options(options: CurationOptions, temperature: float, max_tokens: int) -> ChatOptions:
        return ChatOptions(
            temperature=options.temperature if options.temperature is not None else temperature,
            max_tokens=options.max_tokens or max_tokens,
            model=options.model,
            timeout=options.timeout,
        )
