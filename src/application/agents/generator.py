"""Generatorエージェントとプロンプト構築の実装."""

import logging
import math
import re
import textwrap
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

from src.common.defs.trajectory import Trajectory, TrajectoryMetadata
from src.common.lib.errors import EmptyQueryError, GenerationError
from src.common.lib.prompt_template import TemplateCache, render
from src.components.llm_client.gateway import ChatGateway, ChatMessage, ChatOptions, gateway_name
from src.components.playbook_store.models import Bullet, BulletFilter
from src.components.playbook_store.store import PlaybookStore

logger = logging.getLogger(__name__)

_TRACKING_HEADER = re.compile(r"^[\s#*]*BULLET TRACKING[\s*]*:?[\s*]*(.*)$", re.IGNORECASE)
_ATTRIBUTION_TAG = re.compile(r"#(helpful|harmful)-([A-Za-z0-9_-]+)", re.IGNORECASE)


class GenerationOptions(BaseModel):
    """generateの呼び出しオプション."""

    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    timeout: float | None = None
    system_prompt: str | None = Field(
        default=None,
        description="{bullets}を含むカスタムシステムプロンプト",
    )
    max_bullets: int = Field(default=20, gt=0)
    priority_sections: list[str] = Field(default_factory=list)


@dataclass
class Attribution:
    """応答から抽出したBulletの帰属情報."""

    helpful: list[str] = field(default_factory=list)
    harmful: list[str] = field(default_factory=list)


def extract_attribution(response: str) -> Attribution:
    """応答テキストの BULLET TRACKING セクションから帰属タグを抽出する.

    ヘッダー行以降を1行ずつ走査し、#helpful-<id> / #harmful-<id> を拾う.
    タグを含む行の後の空行でセクションは終わる. それ以外のテキストは無視する.

    Args:
        response: LLMの応答テキスト

    Returns:
        helpful/harmfulそれぞれのBullet IDリスト（出現順、重複なし）
    """
    attribution = Attribution()
    in_section = False
    seen_entry = False

    for raw_line in response.splitlines():
        line = raw_line
        if not in_section:
            header = _TRACKING_HEADER.match(line)
            if header is None:
                continue
            in_section = True
            line = header.group(1)
        elif not line.strip():
            if seen_entry:
                break
            continue

        for kind, bullet_id in _ATTRIBUTION_TAG.findall(line):
            seen_entry = True
            target = attribution.helpful if kind.lower() == "helpful" else attribution.harmful
            if bullet_id not in target:
                target.append(bullet_id)

    return attribution


class PromptBuilder:
    """システムプロンプトテンプレートの読み込みと構築を行うビルダー."""

    def __init__(self, prompts_dir: str = "prompts/generator") -> None:
        """PromptBuilderを初期化する.

        Args:
            prompts_dir: プロンプトテンプレートディレクトリのパス
        """
        self.prompts_dir = Path(prompts_dir)
        self.templates = TemplateCache(self.prompts_dir)

    def build(self, bullets: list[Bullet], custom_prompt: str | None = None) -> str:
        """選択されたBulletからシステムプロンプト文字列を構築する.

        Args:
            bullets: 注入するBulletリスト
            custom_prompt: {bullets}を含むカスタムテンプレート

        Returns:
            構築されたシステムプロンプト
        """
        template = custom_prompt or self.templates.get("system", self._fallback_template())
        return render(template, bullets=self.format_bullets(bullets))

    def format_bullets(self, bullets: list[Bullet]) -> str:
        """Bulletリストをセクションごとにまとめた文字列にフォーマットする.

        セクションは最初に出現した順に並べる.

        Args:
            bullets: Bulletリスト

        Returns:
            セクション見出し付きのBullet文字列
        """
        if not bullets:
            return "No guidelines available yet."

        grouped: dict[str, list[Bullet]] = {}
        for bullet in bullets:
            grouped.setdefault(bullet.section, []).append(bullet)

        blocks = []
        for section, members in grouped.items():
            lines = "\n".join(f"- [{bullet.id}] {bullet.content}" for bullet in members)
            blocks.append(f"## {section}\n{lines}")
        return "\n\n".join(blocks)

    def _fallback_template(self) -> str:
        """ハードコードのフォールバックテンプレートを返す.

        Returns:
            フォールバックテンプレート文字列
        """
        return textwrap.dedent(
            """
            You are an AI assistant helping with software engineering tasks.
            Use the following guidelines from your playbook to provide better assistance:

            {bullets}

            IMPORTANT INSTRUCTIONS:
            1. Follow the guidelines above when relevant to the user's query
            2. At the end of your response, add a section called "BULLET TRACKING:"
            3. In that section, list the guidelines you considered, one per line:
               - HELPFUL: Mark with #helpful-[bullet_id]
               - NOT APPLICABLE or HARMFUL: Mark with #harmful-[bullet_id]

            Example bullet tracking:
            BULLET TRACKING:
            #helpful-abc123 - This guideline about code structure was very relevant
            #harmful-def456 - This guideline about testing was not applicable here

            Provide your response naturally, then add the bullet tracking section.
            """
        ).strip()


class GeneratorAgent:
    """Playbookを参照して応答を生成し、Trajectoryを記録するエージェント."""

    def __init__(self, gateway: ChatGateway, prompt_builder: PromptBuilder | None = None) -> None:
        """GeneratorAgentを初期化する.

        Args:
            gateway: Model Gateway
            prompt_builder: プロンプト構築ビルダー
        """
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()

    def generate(
        self,
        query: str,
        playbook_store: PlaybookStore,
        options: GenerationOptions | None = None,
    ) -> Trajectory:
        """クエリを実行しTrajectoryを返す.

        処理フロー:
            1. PlaybookStoreからBulletを選択
            2. セクションごとにまとめたシステムプロンプトを構築
            3. Model Gatewayで応答を生成
            4. 応答から帰属タグを抽出
            5. helpful/harmfulをPlaybookStoreへフィードバック
            6. Trajectory生成・返却

        Args:
            query: 入力クエリ
            playbook_store: 参照・フィードバック先のPlaybookストア
            options: 生成オプション

        Returns:
            対話を記録したTrajectory

        Raises:
            EmptyQueryError: クエリが空の場合
            GenerationError: ゲートウェイ呼び出しが失敗した場合
        """
        if not query or not query.strip():
            msg = "Query cannot be empty"
            raise EmptyQueryError(msg)

        options = options or GenerationOptions()
        started = time.perf_counter()

        selected = self.select_bullets(playbook_store, options)
        system_prompt = self.prompt_builder.build(selected, options.system_prompt)
        logger.debug(
            "Generating trajectory (bullets=%d, model=%s)",
            len(selected),
            options.model or "default",
        )

        try:
            response = self.gateway.chat(
                [
                    ChatMessage(role="system", content=system_prompt),
                    ChatMessage(role="user", content=query),
                ],
                ChatOptions(
                    temperature=options.temperature,
                    max_tokens=options.max_tokens,
                    model=options.model,
                    timeout=options.timeout,
                ),
            )
        except Exception as e:
            logger.exception(
                "Trajectory generation failed after %.2fs",
                time.perf_counter() - started,
            )
            msg = f"Failed to generate trajectory: {e}"
            raise GenerationError(msg, cause=e) from e

        attribution = extract_attribution(response)
        if attribution.helpful:
            playbook_store.record_feedback(attribution.helpful, "helpful")
        if attribution.harmful:
            playbook_store.record_feedback(attribution.harmful, "harmful")

        trajectory = Trajectory(
            query=query,
            response=response,
            bullets_used=[bullet.id for bullet in selected],
            bullets_helpful=attribution.helpful,
            bullets_harmful=attribution.harmful,
            metadata=TrajectoryMetadata(
                model=options.model or gateway_name(self.gateway),
                tokens_used=math.ceil(len(query + response) / 4),
            ),
        )

        logger.info(
            "Trajectory generated in %.2fs (bullets=%d, helpful=%d, harmful=%d)",
            time.perf_counter() - started,
            len(selected),
            len(attribution.helpful),
            len(attribution.harmful),
        )
        return trajectory

    def select_bullets(
        self,
        playbook_store: PlaybookStore,
        options: GenerationOptions,
    ) -> list[Bullet]:
        """プロンプトに注入するBulletを選択する.

        並び順（安定ソート）:
            1. priority_sectionsに含まれるセクションを優先
            2. 有用度 helpful / (helpful + harmful) の降順（未使用は0.5）
            3. last_usedの新しい順

        Args:
            playbook_store: Playbookストア
            options: 生成オプション

        Returns:
            最大max_bullets件のBulletリスト
        """
        bullets = playbook_store.query(BulletFilter())
        priority = set(options.priority_sections)

        def sort_key(bullet: Bullet) -> tuple[int, float, float]:
            last_used = bullet.metadata.last_used
            recency = last_used.timestamp() if last_used else 0.0
            return (
                0 if bullet.section in priority else 1,
                -bullet.helpfulness_ratio,
                -recency,
            )

        return sorted(bullets, key=sort_key)[: options.max_bullets]
