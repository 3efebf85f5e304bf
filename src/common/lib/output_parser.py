"""LLMの自由記述出力からJSONを取り出すためのユーティリティ.

各エージェントのパーサーは「構造化 → テキスト走査 → デフォルト」の
3段階で結果を返す. どの段階で得られた結果かはParseResult.sourceで判別する.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")

ParseSource = Literal["structured", "text", "default"]

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    """パース結果と、その結果を得た段階を表すタグ付き値."""

    value: T
    source: ParseSource

    @property
    def is_structured(self) -> bool:
        """構造化出力として解釈できたかを返す."""
        return self.source == "structured"


def extract_json(text: str) -> Any | None:  # noqa: ANN401
    """テキストからJSON値を取り出す.

    以下の順に試行し、最初に成功したものを返す.
        1. テキスト全体
        2. コードフェンス（```json ... ```）の中身
        3. 最も外側の {...} または [...] の範囲（開き括弧が先に現れる方から）

    Args:
        text: LLMの応答テキスト

    Returns:
        デコードされたJSON値. 取り出せない場合はNone.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    candidates.extend(match.strip() for match in _FENCE_PATTERN.findall(text))
    spans = []
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            spans.append((start, text[start : end + 1]))
    candidates.extend(span for _, span in sorted(spans))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def clamp_unit(value: Any, default: float) -> float:  # noqa: ANN401
    """値を0.0〜1.0の範囲のfloatに丸める.

    Args:
        value: 変換対象の値
        default: 数値に変換できない場合の値

    Returns:
        0.0〜1.0に収まるfloat
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))
