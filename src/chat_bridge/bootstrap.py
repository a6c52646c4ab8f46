from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from chat_bridge.app_config import AppConfig, RuntimeEnv
from chat_bridge.attachments import AttachmentEncoder, DirectoryFileSource
from chat_bridge.background import BackgroundTasks
from chat_bridge.orchestrator import StreamingOrchestrator
from chat_bridge.provider import LLMProvider, ProviderKind, create_provider
from chat_bridge.store import (
    ChatStore,
    ConversationRepository,
    InMemoryCache,
    MessageRepository,
    ModelSpecRepository,
)
from chat_bridge.titles import TitleGenerator, TitleHandoff


@dataclass
class AppRuntime:
    store: ChatStore
    messages: MessageRepository
    conversations: ConversationRepository
    model_specs: ModelSpecRepository
    providers: dict[ProviderKind, LLMProvider]
    background: BackgroundTasks
    title_handoff: TitleHandoff
    orchestrator: StreamingOrchestrator

    async def close(self) -> None:
        await self.background.close()
        self.store.close()


def _api_keys(env: RuntimeEnv) -> dict[ProviderKind, str | None]:
    return {
        ProviderKind.ANTHROPIC: env.anthropic_api_key,
        ProviderKind.OPENAI: env.openai_api_key,
    }


def build_providers(env: RuntimeEnv) -> dict[ProviderKind, LLMProvider]:
    providers: dict[ProviderKind, LLMProvider] = {}
    for kind, api_key in _api_keys(env).items():
        if not api_key:
            logger.warning(f"No API key for provider={kind.value}; requests for it will be rejected")
            continue
        providers[kind] = create_provider(kind, api_key)
    return providers


def build_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    providers: dict[ProviderKind, LLMProvider] | None = None,
) -> AppRuntime:
    db_path = app.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        db_path = str(Path.cwd() / db_path)
    store = ChatStore(db_path)
    messages = MessageRepository(store)
    conversations = ConversationRepository(store)
    model_specs = ModelSpecRepository(store)

    for spec in app.model_specs:
        model_specs.upsert(spec)
    if app.model_specs:
        logger.info(f"Seeded {len(app.model_specs)} model spec(s) from config")

    if providers is None:
        providers = build_providers(env)

    title_models = {
        ProviderKind.ANTHROPIC: app.anthropic_title_model,
        ProviderKind.OPENAI: app.openai_title_model,
    }
    title_generators: dict[ProviderKind, TitleGenerator] = {}
    if app.title_generation_enabled:
        for kind, provider in providers.items():
            title_generators[kind] = TitleGenerator(
                provider,
                title_models[kind],
                timeout_seconds=app.title_timeout_seconds,
            )

    title_handoff = TitleHandoff(
        conversations,
        InMemoryCache(),
        ttl_seconds=app.title_cache_ttl_seconds,
        poll_delay_seconds=app.title_poll_delay_seconds,
    )
    background = BackgroundTasks()
    file_source = DirectoryFileSource(app.files_dir) if app.files_dir else None

    orchestrator = StreamingOrchestrator(
        messages=messages,
        conversations=conversations,
        model_specs=model_specs,
        providers=providers,
        attachments=AttachmentEncoder(file_source),
        background=background,
        title_generators=title_generators,
        title_handoff=title_handoff,
        default_max_tokens=app.default_max_tokens,
    )
    logger.info(
        f"Runtime ready: db={db_path}, providers={[k.value for k in providers]}, "
        f"titles={'on' if title_generators else 'off'}"
    )
    return AppRuntime(
        store=store,
        messages=messages,
        conversations=conversations,
        model_specs=model_specs,
        providers=providers,
        background=background,
        title_handoff=title_handoff,
        orchestrator=orchestrator,
    )
