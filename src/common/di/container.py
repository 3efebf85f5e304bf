"""依存性注入コンテナの定義."""

from dependency_injector import containers, providers

from src.application.agents.curator import CuratorAgent, CuratorPromptBuilder
from src.application.agents.generator import GeneratorAgent, PromptBuilder
from src.application.agents.reflector import (
    ReflectorAgent,
    ReflectorPromptBuilder,
)
from src.application.workflows.learning_workflow import LearningWorkflow
from src.common.config.section_loader import SectionLoader
from src.components.llm_client.client import LLMClient, create_chat_model
from src.components.llm_client.embedding_client import create_embedding_client
from src.components.llm_client.gateway import ModelGateway
from src.components.playbook_store.repository import PlaybookRepository


class Container(containers.DeclarativeContainer):
    """アプリケーション全体のDIコンテナ.

    PlaybookStoreはコンテキストごとにplaybook_repositoryから読み込み、
    各エージェントには呼び出し時に渡す.
    """

    config = providers.Configuration()

    chat_model = providers.Singleton(
        create_chat_model,
        provider=config.llm.provider,
        model=config.llm.model,
        api_key=config.llm.api_key,
        base_url=config.llm.base_url,
    )

    llm_client = providers.Singleton(
        LLMClient,
        chat_model=chat_model,
        name=config.llm.provider,
    )

    embedding_client = providers.Singleton(
        create_embedding_client,
        enabled=config.embedding.enabled,
        model=config.embedding.model,
        api_key=config.embedding.api_key,
    )

    gateway = providers.Singleton(
        ModelGateway,
        llm_client=llm_client,
        embedding_client=embedding_client,
    )

    playbook_repository = providers.Singleton(
        PlaybookRepository,
        data_dir=config.playbook.data_dir,
        max_size=config.playbook.max_size,
        dedup_threshold=config.playbook.dedup_threshold,
    )

    # セクション定義ローダー
    section_loader = providers.Singleton(
        SectionLoader,
        config_path=config.playbook.sections_path,
    )
    sections = providers.Singleton(
        lambda loader: loader.load(),
        section_loader,
    )

    prompt_builder = providers.Singleton(
        PromptBuilder,
        prompts_dir="prompts/generator",
    )

    generator_agent = providers.Factory(
        GeneratorAgent,
        gateway=gateway,
        prompt_builder=prompt_builder,
    )

    reflector_prompt_builder = providers.Singleton(
        ReflectorPromptBuilder,
        prompts_dir="prompts/reflector",
    )

    reflector_agent = providers.Factory(
        ReflectorAgent,
        gateway=gateway,
        prompt_builder=reflector_prompt_builder,
        max_iterations=config.reflector.max_iterations,
        quality_threshold=config.reflector.quality_threshold,
    )

    curator_prompt_builder = providers.Singleton(
        CuratorPromptBuilder,
        prompts_dir="prompts/curator",
    )

    curator_agent = providers.Factory(
        CuratorAgent,
        gateway=gateway,
        prompt_builder=curator_prompt_builder,
        sections=sections,
        min_confidence=config.curator.min_confidence,
        enable_deduplication=config.curator.enable_deduplication,
        dedup_threshold=config.playbook.dedup_threshold,
    )

    learning_workflow = providers.Factory(
        LearningWorkflow,
        generator=generator_agent,
        reflector=reflector_agent,
        curator=curator_agent,
    )
