"""アプリケーション設定の管理."""

import os

from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    """LLM設定."""

    provider: str = "openai"
    model: str = "gpt-4.1-mini"
    api_key: str = ""
    base_url: str = ""


class EmbeddingConfig(BaseModel):
    """Embedding設定."""

    enabled: bool = True
    model: str = "text-embedding-3-small"
    api_key: str = ""


class PlaybookConfig(BaseModel):
    """Playbook設定."""

    data_dir: str = "data/contexts"
    max_size: int = Field(default=1000, gt=0)
    dedup_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    sections_path: str = "config/sections.yaml"


class GeneratorConfig(BaseModel):
    """Generator設定."""

    max_bullets: int = Field(default=20, gt=0)


class ReflectorConfig(BaseModel):
    """Reflector設定."""

    max_iterations: int = Field(default=5, ge=1)
    quality_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class CuratorConfig(BaseModel):
    """Curator設定."""

    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    enable_deduplication: bool = True


class AppConfig(BaseModel):
    """アプリケーション全体の設定."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    playbook: PlaybookConfig = Field(default_factory=PlaybookConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    reflector: ReflectorConfig = Field(default_factory=ReflectorConfig)
    curator: CuratorConfig = Field(default_factory=CuratorConfig)
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    """真偽値の環境変数を読み込む."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> AppConfig:
    """環境変数から設定を読み込む.

    Returns:
        アプリケーション設定
    """
    return AppConfig(
        llm=LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "openai"),
            model=os.getenv("LLM_MODEL", "gpt-4.1-mini"),
            api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv("LLM_BASE_URL", ""),
        ),
        embedding=EmbeddingConfig(
            enabled=_env_bool("EMBEDDING_ENABLED", True),
            model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            api_key=os.getenv("OPENAI_API_KEY", ""),
        ),
        playbook=PlaybookConfig(
            data_dir=os.getenv("ACE_CONTEXT_DIR", "data/contexts"),
            max_size=int(os.getenv("ACE_MAX_PLAYBOOK_SIZE", "1000")),
            dedup_threshold=float(os.getenv("ACE_DEDUP_THRESHOLD", "0.85")),
            sections_path=os.getenv("ACE_SECTIONS_PATH", "config/sections.yaml"),
        ),
        generator=GeneratorConfig(
            max_bullets=int(os.getenv("ACE_MAX_BULLETS", "20")),
        ),
        reflector=ReflectorConfig(
            max_iterations=int(os.getenv("ACE_MAX_REFLECTOR_ITERATIONS", "5")),
            quality_threshold=float(os.getenv("ACE_QUALITY_THRESHOLD", "0.8")),
        ),
        curator=CuratorConfig(
            min_confidence=float(os.getenv("ACE_MIN_CONFIDENCE", "0.5")),
            enable_deduplication=_env_bool("ACE_ENABLE_DEDUPLICATION", True),
        ),
        log_level=os.getenv("ACE_LOG_LEVEL", "INFO"),
    )
