"""Reflectorエージェントとプロンプト構築の実装."""

import json
import logging
import re
import textwrap
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.common.defs.insight import Insight, InsightScore, QualityAssessment, ReflectionResult
from src.common.defs.trajectory import Trajectory
from src.common.lib.errors import InvalidTrajectoryError, ReflectionError
from src.common.lib.output_parser import ParseResult, clamp_unit, extract_json
from src.common.lib.prompt_template import TemplateCache, render
from src.components.llm_client.gateway import ChatGateway, ChatMessage, ChatOptions

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
DEFAULT_SECTION = "General"
FALLBACK_REFINE_BELOW = 0.7

_THINKING_PREFIX = (
    "Think step by step about this interaction. "
    "Consider multiple perspectives and dig deep into the patterns.\n\n"
)
_INSIGHT_FIELD = re.compile(
    r"^[\s\-*#>\d.)]*\**\s*(observation|lesson|suggested[_ ]bullet|confidence|section)\s*\**\s*:\s*(.*)$",
    re.IGNORECASE,
)
_NUMBER = re.compile(r"[0-9]*\.?[0-9]+")


class ReflectionOptions(BaseModel):
    """reflectの呼び出しオプション. Noneはエージェントの既定値を使う."""

    max_iterations: int | None = Field(default=None, ge=1)
    quality_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    timeout: float | None = None
    thinking_mode: bool = False


def _insight_from_fields(fields: dict[str, Any]) -> Insight | None:
    """フィールド辞書からInsightを組み立てる. 必須項目が欠けていればNone."""
    observation = str(fields.get("observation") or "").strip()
    lesson = str(fields.get("lesson") or "").strip()
    suggested_bullet = str(fields.get("suggested_bullet") or "").strip()
    if not (observation and lesson and suggested_bullet):
        return None

    return Insight(
        observation=observation,
        lesson=lesson,
        suggested_bullet=suggested_bullet,
        confidence=clamp_unit(fields.get("confidence"), DEFAULT_CONFIDENCE),
        section=str(fields.get("section") or "").strip() or DEFAULT_SECTION,
    )


def _scan_insights(text: str) -> list[Insight]:
    """key: value 形式の行を走査してInsightを抽出する.

    observation行が現れるたびに新しいブロックを開始する.
    observation/lesson/suggested_bulletのいずれかが欠けたブロックは捨てる.
    """
    insights: list[Insight] = []
    current: dict[str, Any] = {}

    def flush() -> None:
        insight = _insight_from_fields(current)
        if insight is not None:
            insights.append(insight)

    for line in text.splitlines():
        match = _INSIGHT_FIELD.match(line)
        if match is None:
            continue
        key = match.group(1).lower().replace(" ", "_")
        value = match.group(2).strip().strip("*").strip()

        if key == "observation" and current.get("observation"):
            flush()
            current = {}
        if key == "confidence":
            number = _NUMBER.search(value)
            if number is None:
                continue
            value = number.group(0)
        current[key] = value

    flush()
    return insights


def parse_insights(text: str) -> ParseResult[list[Insight]]:
    """LLM応答からInsightリストをパースする.

    1. JSON（{"insights": [...]} または配列）として解釈
    2. 失敗した場合は key: value 行の走査
    3. どちらでも得られなければ空リスト

    Args:
        text: LLMの応答テキスト

    Returns:
        Insightリストと取得元のタグ
    """
    data = extract_json(text)
    items = data.get("insights") if isinstance(data, dict) else data
    if isinstance(items, list) and all(isinstance(item, dict) for item in items):
        insights = [
            insight for item in items if (insight := _insight_from_fields(item)) is not None
        ]
        return ParseResult(insights, "structured")

    logger.warning("Failed to parse insights JSON, attempting text extraction")
    insights = _scan_insights(text)
    if insights:
        return ParseResult(insights, "text")
    return ParseResult([], "default")


def fallback_quality(insights: list[Insight]) -> QualityAssessment:
    """Insightの確信度の平均から品質評価を推定する.

    Args:
        insights: 評価対象のInsightリスト

    Returns:
        推定された品質評価
    """
    if not insights:
        return QualityAssessment(
            overall_quality=0.0,
            improvement_suggestions=["No insights were extracted"],
            should_refine=True,
        )

    confidences = [
        insight.confidence if insight.confidence is not None else DEFAULT_CONFIDENCE
        for insight in insights
    ]
    quality = sum(confidences) / len(confidences)
    return QualityAssessment(
        overall_quality=quality,
        improvement_suggestions=["Could not assess quality properly"],
        should_refine=quality < FALLBACK_REFINE_BELOW,
    )


def parse_quality(text: str, insights: list[Insight]) -> ParseResult[QualityAssessment]:
    """LLM応答から品質評価をパースする.

    overall_qualityまたはshould_refineを含むJSONオブジェクトのみを
    構造化出力として扱う. それ以外はfallback_qualityで推定する.

    Args:
        text: LLMの応答テキスト
        insights: 評価対象のInsightリスト

    Returns:
        品質評価と取得元のタグ
    """
    data = extract_json(text)
    if isinstance(data, dict) and ("overall_quality" in data or "should_refine" in data):
        raw_scores = data.get("insight_scores")
        if not isinstance(raw_scores, list):
            raw_scores = []

        scores: list[InsightScore] = []
        for item in raw_scores:
            if not isinstance(item, dict):
                continue
            try:
                scores.append(InsightScore.model_validate(item))
            except PydanticValidationError:
                logger.debug("Skipping malformed insight score: %s", item)

        suggestions = data.get("improvement_suggestions") or []
        if not isinstance(suggestions, list):
            suggestions = [suggestions]

        return ParseResult(
            QualityAssessment(
                overall_quality=clamp_unit(data.get("overall_quality"), 0.0),
                insight_scores=scores,
                improvement_suggestions=[str(s) for s in suggestions],
                should_refine=data.get("should_refine") is not False,
            ),
            "structured",
        )

    logger.warning("Failed to parse quality assessment, using confidence average")
    return ParseResult(fallback_quality(insights), "default")


class ReflectorPromptBuilder:
    """Reflector用プロンプトテンプレートの読み込みと構築を行うビルダー.

    テンプレートは analysis / quality / refinement の3種類.
    """

    def __init__(self, prompts_dir: str = "prompts/reflector") -> None:
        """ReflectorPromptBuilderを初期化する.

        Args:
            prompts_dir: プロンプトテンプレートディレクトリのパス
        """
        self.prompts_dir = Path(prompts_dir)
        self.templates = TemplateCache(self.prompts_dir)

    def build_analysis(self, trajectory: Trajectory, thinking_mode: bool = False) -> str:
        """初期分析用プロンプト文字列を構築する.

        Args:
            trajectory: 分析対象のTrajectory
            thinking_mode: 段階的な思考を促す前置きを付けるか

        Returns:
            構築されたプロンプト文字列
        """
        template = self.templates.get("analysis", self._fallback_analysis())
        prompt = render(
            template,
            query=trajectory.query,
            response=trajectory.response,
            bullets_used=self._format_ids(trajectory.bullets_used),
            bullets_helpful=self._format_ids(trajectory.bullets_helpful),
            bullets_harmful=self._format_ids(trajectory.bullets_harmful),
        )
        if thinking_mode:
            return _THINKING_PREFIX + prompt
        return prompt

    def build_quality(self, insights: list[Insight]) -> str:
        """品質評価用プロンプト文字列を構築する.

        Args:
            insights: 評価対象のInsightリスト

        Returns:
            構築されたプロンプト文字列
        """
        template = self.templates.get("quality", self._fallback_quality())
        return render(template, insights=self._dump_insights(insights))

    def build_refinement(self, insights: list[Insight], assessment: QualityAssessment) -> str:
        """改善用プロンプト文字列を構築する.

        Args:
            insights: 現在のInsightリスト
            assessment: 直前の品質評価

        Returns:
            構築されたプロンプト文字列
        """
        template = self.templates.get("refinement", self._fallback_refinement())
        feedback = json.dumps(
            {
                "overall_quality": assessment.overall_quality,
                "suggestions": assessment.improvement_suggestions,
            },
            ensure_ascii=False,
            indent=2,
        )
        return render(
            template,
            current_insights=self._dump_insights(insights),
            quality_feedback=feedback,
        )

    @staticmethod
    def _format_ids(bullet_ids: Sequence[str]) -> str:
        return ", ".join(bullet_ids) if bullet_ids else "None"

    @staticmethod
    def _dump_insights(insights: list[Insight]) -> str:
        return json.dumps(
            [insight.model_dump() for insight in insights],
            ensure_ascii=False,
            indent=2,
        )

    def _fallback_analysis(self) -> str:
        """初期分析用のフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            Analyze the following interaction between a user and an AI assistant
            to extract insights that could improve future interactions.

            TRAJECTORY:
            Query: {query}
            Response: {response}
            Bullets Used: {bullets_used}
            Bullets Helpful: {bullets_helpful}
            Bullets Harmful: {bullets_harmful}

            Identify patterns, lessons learned, and actionable insights. Focus on:
            1. What worked well in the response?
            2. What could have been improved?
            3. Are there missing guidelines that would have helped?
            4. Are there existing guidelines that proved unhelpful?

            For each insight, provide:
            - OBSERVATION: What you noticed in the interaction
            - LESSON: The actionable lesson learned
            - SUGGESTED_BULLET: A concrete guideline that could be added to the playbook
            - CONFIDENCE: Your confidence in this insight (0.0 to 1.0)
            - SECTION: Which section this bullet should belong to

            Respond in JSON format:
            {
              "insights": [
                {
                  "observation": "...",
                  "lesson": "...",
                  "suggested_bullet": "...",
                  "confidence": 0.8,
                  "section": "Code Generation"
                }
              ]
            }
            """
        ).strip()

    def _fallback_quality(self) -> str:
        """品質評価用のフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            Assess the quality of the following insights extracted from a trajectory:

            INSIGHTS:
            {insights}

            Rate each insight on:
            1. SPECIFICITY: Is the insight concrete and actionable? (0.0-1.0)
            2. RELEVANCE: Is it relevant to the trajectory analyzed? (0.0-1.0)
            3. NOVELTY: Does it provide new information? (0.0-1.0)
            4. CONFIDENCE: How confident are you in this insight? (0.0-1.0)

            Also provide an overall quality score and suggestions for improvement.

            Respond in JSON format:
            {
              "insight_scores": [
                {
                  "insight_index": 0,
                  "specificity": 0.8,
                  "relevance": 0.9,
                  "novelty": 0.7,
                  "confidence": 0.8,
                  "overall": 0.8
                }
              ],
              "overall_quality": 0.75,
              "improvement_suggestions": ["Make insight 2 more specific"],
              "should_refine": true
            }
            """
        ).strip()

    def _fallback_refinement(self) -> str:
        """改善用のフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            Review and refine the following insights from trajectory analysis:

            CURRENT INSIGHTS:
            {current_insights}

            QUALITY FEEDBACK:
            {quality_feedback}

            Improve these insights by:
            1. Making them more specific and actionable
            2. Removing duplicates or overly similar insights
            3. Adjusting confidence scores based on evidence
            4. Ensuring suggested bullets are concrete and useful

            Respond with the refined insights in the same JSON format
            ({"insights": [...]}), focusing on quality over quantity.
            """
        ).strip()


class ReflectorAgent:
    """Trajectoryを分析し、Insightsを抽出するエージェント."""

    def __init__(
        self,
        gateway: ChatGateway,
        prompt_builder: ReflectorPromptBuilder | None = None,
        max_iterations: int = 5,
        quality_threshold: float = 0.8,
    ) -> None:
        """ReflectorAgentを初期化する.

        Args:
            gateway: Model Gateway
            prompt_builder: プロンプト構築ビルダー
            max_iterations: 反復の最大回数（初期分析を含む）
            quality_threshold: 反復を打ち切る品質スコア
        """
        self.gateway = gateway
        self.prompt_builder = prompt_builder or ReflectorPromptBuilder()
        self.max_iterations = max_iterations
        self.quality_threshold = quality_threshold

    def reflect(
        self,
        trajectory: Trajectory,
        options: ReflectionOptions | None = None,
    ) -> ReflectionResult:
        """Trajectoryを分析しReflectionResultを返す.

        処理フロー:
            1. 初期分析でInsightsを抽出（iterations=1）
            2. 品質評価
            3. 品質が閾値以上、または改善不要と評価されたら終了
            4. 改善を実行しiterationsを加算. 2へ戻る
        iterationsがmax_iterationsに達した時点で評価せずに終了する.

        Args:
            trajectory: 分析対象のTrajectory
            options: 反復オプション

        Returns:
            最終Insights、反復回数、最後の品質スコア

        Raises:
            InvalidTrajectoryError: queryまたはresponseが空の場合
            ReflectionError: ゲートウェイ呼び出しが失敗した場合
        """
        if not trajectory.query.strip() or not trajectory.response.strip():
            msg = "Trajectory must have both query and response"
            raise InvalidTrajectoryError(msg)

        options = options or ReflectionOptions()
        max_iterations = options.max_iterations or self.max_iterations
        threshold = (
            options.quality_threshold
            if options.quality_threshold is not None
            else self.quality_threshold
        )
        started = time.perf_counter()

        insights = self._analyze(trajectory, options)
        quality = 0.0
        iterations = 1

        while iterations < max_iterations:
            assessment = self._assess(insights, options)
            quality = assessment.overall_quality
            logger.debug(
                "Quality assessment (iteration=%d, quality=%.2f, threshold=%.2f, refine=%s)",
                iterations,
                quality,
                threshold,
                assessment.should_refine,
            )
            if quality >= threshold or not assessment.should_refine:
                break

            insights = self._refine(insights, assessment, options)
            iterations += 1

        logger.info(
            "Reflection completed in %.2fs (iterations=%d, quality=%.2f, insights=%d)",
            time.perf_counter() - started,
            iterations,
            quality,
            len(insights),
        )
        return ReflectionResult(insights=insights, iterations=iterations, quality_score=quality)

    def _analyze(self, trajectory: Trajectory, options: ReflectionOptions) -> list[Insight]:
        """初期分析を実行する."""
        prompt = self.prompt_builder.build_analysis(trajectory, options.thinking_mode)
        response = self._chat(prompt, options, temperature=0.3, max_tokens=2000)
        return parse_insights(response).value

    def _assess(self, insights: list[Insight], options: ReflectionOptions) -> QualityAssessment:
        """Insight集合の品質を評価する. 空集合はゲートウェイを呼ばずに品質0とする."""
        if not insights:
            return fallback_quality(insights)

        prompt = self.prompt_builder.build_quality(insights)
        response = self._chat(prompt, options, temperature=0.2, max_tokens=1000)
        return parse_quality(response, insights).value

    def _refine(
        self,
        insights: list[Insight],
        assessment: QualityAssessment,
        options: ReflectionOptions,
    ) -> list[Insight]:
        """品質評価を踏まえてInsightを改善する.

        改善結果が空の場合は直前のInsightを維持する.
        """
        prompt = self.prompt_builder.build_refinement(insights, assessment)
        response = self._chat(prompt, options, temperature=0.3, max_tokens=2000)
        refined = parse_insights(response).value
        if not refined:
            logger.warning("Refinement produced no insights, keeping previous set")
            return insights
        return refined

    def _chat(
        self,
        prompt: str,
        options: ReflectionOptions,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """ゲートウェイを呼び出す. 失敗はReflectionErrorに包む."""
        try:
            return self.gateway.chat(
                [ChatMessage(role="user", content=prompt)],
                ChatOptions(
                    temperature=(
                        options.temperature if options.temperature is not None else temperature
                    ),
                    max_tokens=options.max_tokens or max_tokens,
                    model=options.model,
                    timeout=options.timeout,
                ),
            )
        except Exception as e:
            logger.exception("Reflector gateway call failed")
            msg = f"Failed to reflect on trajectory: {e}"
            raise ReflectionError(msg, cause=e) from e
