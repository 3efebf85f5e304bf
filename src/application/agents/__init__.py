"""エージェント層のエクスポート."""

from src.application.agents.curator import CurationOptions, CuratorAgent, CuratorPromptBuilder
from src.application.agents.generator import GenerationOptions, GeneratorAgent, PromptBuilder
from src.application.agents.reflector import (
    ReflectionOptions,
    ReflectorAgent,
    ReflectorPromptBuilder,
)

__all__ = [
    "GeneratorAgent",
    "GenerationOptions",
    "PromptBuilder",
    "ReflectorAgent",
    "ReflectionOptions",
    "ReflectorPromptBuilder",
    "CuratorAgent",
    "CurationOptions",
    "CuratorPromptBuilder",
]
