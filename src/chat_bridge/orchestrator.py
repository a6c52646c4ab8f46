"""End-to-end flow for one ask or edit exchange.

Everything up to the first byte (model resolution, the user message write,
history) happens in ``prepare_ask`` / ``prepare_edit`` and may raise
``ChatBridgeError`` for a synchronous JSON response. ``PreparedStream.envelopes``
then drives the provider stream through the protocol emitter; from there on
failures only ever surface as an error envelope.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from enum import Enum
from uuid import uuid4

from loguru import logger

from chat_bridge.attachments import AttachmentEncoder, build_user_content
from chat_bridge.background import BackgroundTasks
from chat_bridge.errors import ChatBridgeError, NotFoundError, PersistenceError, ProviderError, ValidationError
from chat_bridge.protocol import Envelope, FinalPayload, ProtocolEmitter, new_step_id
from chat_bridge.provider import LLMProvider, ProviderKind
from chat_bridge.requests import AskRequest, EditRequest
from chat_bridge.store.conversations import ConversationRepository
from chat_bridge.store.messages import MessageRepository
from chat_bridge.store.model_specs import ModelSpecRepository
from chat_bridge.store.models import (
    ConversationRecord,
    HistoryChain,
    MessagePatch,
    MessageRecord,
    ModelSpec,
    normalize_parent_id,
)
from chat_bridge.store.store import utc_now
from chat_bridge.stream_events import StreamDone, StreamEvent, StreamFailure, StreamOptions, TextDelta
from chat_bridge.titles import TitleGenerator, TitleHandoff

USER_SENDER = "User"


class StreamState(str, Enum):
    IDLE = "idle"
    RESOLVING_MODEL = "resolving_model"
    PERSISTING = "persisting"
    BUILDING_CONTEXT = "building_context"
    STREAMING = "streaming"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"


def _advance(history: list[StreamState], state: StreamState) -> None:
    logger.debug(f"Stream state: {history[-1].value} -> {state.value}")
    history.append(state)


def _reject(history: list[StreamState], action: str, ex: ChatBridgeError) -> None:
    failed_in = history[-1]
    _advance(history, StreamState.FAILED)
    logger.info(f"{action} rejected during {failed_in.value} ({ex.status_code}): {ex.message}")


@dataclass(frozen=True)
class ResolvedModel:
    kind: ProviderKind
    model: str
    spec: ModelSpec | None = None

    @property
    def sender(self) -> str:
        return self.spec.label if self.spec is not None else self.model

    @property
    def icon_url(self) -> str:
        if self.spec is not None and self.spec.icon_url:
            return self.spec.icon_url
        return self.kind.endpoint

    def stream_options(self, messages: list[dict], default_max_tokens: int) -> StreamOptions:
        spec = self.spec
        if spec is None:
            return StreamOptions(model=self.model, messages=messages, max_tokens=default_max_tokens)
        return StreamOptions(
            model=self.model,
            messages=messages,
            system_prompt=spec.system_message,
            max_tokens=spec.max_tokens or default_max_tokens,
            temperature=spec.temperature,
            top_p=spec.top_p,
            top_k=spec.top_k,
            frequency_penalty=spec.frequency_penalty,
            presence_penalty=spec.presence_penalty,
            stop_sequences=list(spec.stop_sequences),
        )


@dataclass
class StreamingSession:
    """In-flight values for one streaming exchange."""

    user_id: str
    conversation: ConversationRecord
    user_message: MessageRecord
    response_message_id: str
    resolved: ResolvedModel
    provider: LLMProvider
    messages: list[dict]
    existing_response: MessageRecord | None = None
    generate_title: bool = False
    step_id: str = field(default_factory=new_step_id)
    state_history: list[StreamState] = field(default_factory=lambda: [StreamState.IDLE])
    text_parts: list[str] = field(default_factory=list)
    token_count: int = 0
    prompt_tokens: int = 0
    finish_reason: str | None = None
    provider_error: ProviderError | None = None
    save_error: PersistenceError | None = None

    @property
    def state(self) -> StreamState:
        return self.state_history[-1]

    def advance(self, state: StreamState) -> None:
        _advance(self.state_history, state)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def is_edit(self) -> bool:
        return self.existing_response is not None


class PreparedStream:
    def __init__(self, orchestrator: StreamingOrchestrator, session: StreamingSession):
        self._orchestrator = orchestrator
        self.session = session

    def envelopes(self) -> AsyncIterator[Envelope]:
        return self._orchestrator.run(self.session)


class StreamingOrchestrator:
    def __init__(
        self,
        *,
        messages: MessageRepository,
        conversations: ConversationRepository,
        model_specs: ModelSpecRepository,
        providers: dict[ProviderKind, LLMProvider],
        attachments: AttachmentEncoder,
        background: BackgroundTasks,
        title_generators: dict[ProviderKind, TitleGenerator] | None = None,
        title_handoff: TitleHandoff | None = None,
        default_max_tokens: int = 4000,
        history_retry_delay_seconds: float = 0.1,
    ):
        self._messages = messages
        self._conversations = conversations
        self._model_specs = model_specs
        self._providers = providers
        self._attachments = attachments
        self._background = background
        self._title_generators = title_generators or {}
        self._title_handoff = title_handoff
        self._default_max_tokens = default_max_tokens
        self._history_retry_delay_seconds = history_retry_delay_seconds

    # -- ResolvingModel -------------------------------------------------

    async def resolve_model(
        self,
        endpoint: str | None,
        model: str | None,
        spec_name: str | None,
    ) -> tuple[ResolvedModel, LLMProvider]:
        spec: ModelSpec | None = None
        if spec_name:
            spec = await asyncio.to_thread(self._model_specs.find_by_spec, spec_name)
            if spec is None:
                logger.warning(f"Spec not found, falling back to model parameter: spec={spec_name}, model={model}")

        if spec is not None:
            kind = self._provider_kind(spec.provider)
            resolved = ResolvedModel(kind=kind, model=spec.model_id, spec=spec)
        else:
            if not model:
                raise ValidationError("No model specified (spec or model parameter required)")
            if not endpoint:
                raise ValidationError("No endpoint specified")
            resolved = ResolvedModel(kind=self._provider_kind(endpoint), model=model)

        provider = self._providers.get(resolved.kind)
        if provider is None:
            raise ValidationError(f"Provider not configured: {resolved.kind.value}")
        logger.debug(f"Resolved model: provider={resolved.kind.value}, model={resolved.model}, spec={spec_name}")
        return resolved, provider

    @staticmethod
    def _provider_kind(name: str) -> ProviderKind:
        try:
            return ProviderKind.from_name(name)
        except ValueError as ex:
            raise ValidationError(str(ex)) from ex

    # -- ask ------------------------------------------------------------

    async def prepare_ask(self, user_id: str, endpoint: str | None, request: AskRequest) -> PreparedStream:
        states = [StreamState.IDLE]
        try:
            return await self._prepare_ask(states, user_id, endpoint, request)
        except ChatBridgeError as ex:
            _reject(states, "Ask", ex)
            raise

    async def _prepare_ask(
        self,
        states: list[StreamState],
        user_id: str,
        endpoint: str | None,
        request: AskRequest,
    ) -> PreparedStream:
        if not request.text:
            raise ValidationError("Text is required")

        _advance(states, StreamState.RESOLVING_MODEL)
        resolved, provider = await self.resolve_model(
            endpoint or request.endpoint, request.model, request.spec
        )

        conversation_id = request.conversation_id
        if conversation_id == "null":
            conversation_id = None
        is_new_conversation = not conversation_id
        conversation_id = conversation_id or str(uuid4())
        parent_id = normalize_parent_id(request.parent_message_id)

        user_message = MessageRecord(
            id=request.message_id or str(uuid4()),
            conversation_id=conversation_id,
            parent_message_id=parent_id,
            user_id=user_id,
            sender=USER_SENDER,
            text=request.text,
            is_created_by_user=True,
            model=resolved.model,
            file_ids=tuple(request.file_ids),
        )
        _advance(states, StreamState.PERSISTING)
        user_message, conversation = await self._persist_ask(
            user_message, resolved, is_new_conversation
        )

        _advance(states, StreamState.BUILDING_CONTEXT)
        attachments = await self._attachments.encode(request.file_ids, user_id)
        history: list[dict] = []
        if not is_new_conversation and parent_id:
            chain = await self._load_history(conversation_id, user_id, parent_id)
            history = [{"role": m.role, "content": m.text} for m in chain.messages]
        history.append({"role": "user", "content": build_user_content(request.text, attachments)})

        session = StreamingSession(
            user_id=user_id,
            conversation=conversation,
            user_message=user_message,
            response_message_id=str(uuid4()),
            resolved=resolved,
            provider=provider,
            messages=history,
            generate_title=is_new_conversation and parent_id is None,
            state_history=states,
        )
        logger.debug(
            f"Prepared ask: conversation={conversation_id}, new={is_new_conversation}, "
            f"context_messages={len(history)}, images={len(attachments.images)}"
        )
        return PreparedStream(self, session)

    async def _persist_ask(
        self,
        user_message: MessageRecord,
        resolved: ResolvedModel,
        is_new_conversation: bool,
    ) -> tuple[MessageRecord, ConversationRecord]:
        user_id = user_message.user_id
        conversation_id = user_message.conversation_id
        if is_new_conversation:
            conversation_call = asyncio.to_thread(
                self._conversations.create,
                self._new_conversation(conversation_id, user_id, resolved),
            )
        else:
            conversation_call = asyncio.to_thread(
                self._conversations.find_by_id_and_user, conversation_id, user_id
            )

        saved, conversation = await asyncio.gather(
            asyncio.to_thread(self._messages.create, user_message),
            conversation_call,
            return_exceptions=True,
        )

        if isinstance(saved, BaseException):
            if is_new_conversation and isinstance(conversation, ConversationRecord):
                await asyncio.to_thread(self._conversations.delete, conversation_id, user_id)
            raise saved
        if isinstance(conversation, BaseException) or conversation is None:
            await asyncio.to_thread(self._messages.delete, saved.id, user_id)
            if isinstance(conversation, BaseException):
                raise conversation
            raise NotFoundError("Conversation not found")
        return saved, conversation

    @staticmethod
    def _new_conversation(conversation_id: str, user_id: str, resolved: ResolvedModel) -> ConversationRecord:
        settings: dict = {}
        metadata: dict = {"iconURL": resolved.icon_url}
        if resolved.spec is not None:
            spec = resolved.spec
            metadata["spec"] = spec.spec
            metadata["modelLabel"] = spec.label
            settings = {
                "temperature": spec.temperature,
                "top_p": spec.top_p,
                "topK": spec.top_k,
                "frequency_penalty": spec.frequency_penalty,
                "presence_penalty": spec.presence_penalty,
                "maxOutputTokens": spec.max_tokens,
            }
            settings = {k: v for k, v in settings.items() if v is not None}
        return ConversationRecord(
            id=conversation_id,
            user_id=user_id,
            endpoint=resolved.kind.endpoint,
            model=resolved.model,
            settings=settings,
            metadata=metadata,
        )

    async def _load_history(self, conversation_id: str, user_id: str, start_id: str) -> HistoryChain:
        """Parent chain for a reply. A missing parent gets one retry, then no history."""
        for attempt in range(2):
            try:
                chain = await asyncio.to_thread(
                    self._messages.find_history_chain, conversation_id, user_id, start_id
                )
            except NotFoundError:
                if attempt == 0:
                    await asyncio.sleep(self._history_retry_delay_seconds)
                    continue
                logger.warning(
                    f"Parent message not found, continuing without history: "
                    f"conversation={conversation_id}, parent={start_id}"
                )
                return HistoryChain(messages=[], truncated=True)
            if chain.truncated:
                logger.warning(
                    f"Degraded context: history chain truncated for conversation={conversation_id}"
                )
            return chain
        return HistoryChain(messages=[], truncated=True)

    # -- edit -----------------------------------------------------------

    async def prepare_edit(
        self,
        user_id: str,
        endpoint: str | None,
        request: EditRequest,
    ) -> PreparedStream | MessageRecord:
        """Prepare a regeneration stream, or apply a text-only edit and return the message."""
        states = [StreamState.IDLE]
        try:
            return await self._prepare_edit(states, user_id, endpoint, request)
        except ChatBridgeError as ex:
            _reject(states, "Edit", ex)
            raise

    async def _prepare_edit(
        self,
        states: list[StreamState],
        user_id: str,
        endpoint: str | None,
        request: EditRequest,
    ) -> PreparedStream | MessageRecord:
        if not request.text or not request.conversation_id:
            raise ValidationError("Text and conversationId are required")
        target = request.edit_target()
        conversation_id = request.conversation_id

        conversation = await asyncio.to_thread(
            self._conversations.find_by_id_and_user, conversation_id, user_id
        )
        if conversation is None:
            raise NotFoundError("Conversation not found")
        classification = await asyncio.to_thread(
            self._messages.classify_edit_target, conversation_id, user_id, target
        )
        edited = classification.user_message
        logger.debug(
            f"Edit target: message={edited.id}, response={getattr(classification.assistant_message, 'id', None)}, "
            f"new_branch={classification.is_new_branch}"
        )

        if not edited.is_created_by_user:
            updated = await asyncio.to_thread(
                self._messages.update, edited.id, user_id, MessagePatch(text=request.text)
            )
            if updated is None:
                raise NotFoundError("Message to edit not found")
            return updated

        _advance(states, StreamState.RESOLVING_MODEL)
        resolved, provider = await self.resolve_model(
            endpoint or request.endpoint or conversation.endpoint,
            request.model or conversation.model,
            request.spec,
        )

        _advance(states, StreamState.PERSISTING)
        updated = await asyncio.to_thread(
            self._messages.update, edited.id, user_id, MessagePatch(text=request.text)
        )
        if updated is None:
            raise NotFoundError("Message to edit not found")

        _advance(states, StreamState.BUILDING_CONTEXT)
        file_ids = request.file_ids or list(updated.file_ids)
        attachments = await self._attachments.encode(file_ids, user_id)
        chain = await self._load_history(conversation_id, user_id, updated.id)
        history = [{"role": m.role, "content": m.text} for m in chain.messages[:-1]]
        history.append({"role": "user", "content": build_user_content(request.text, attachments)})

        existing = classification.assistant_message
        session = StreamingSession(
            user_id=user_id,
            conversation=conversation,
            user_message=updated,
            response_message_id=existing.id if existing is not None else str(uuid4()),
            resolved=resolved,
            provider=provider,
            messages=history,
            existing_response=existing,
            state_history=states,
        )
        return PreparedStream(self, session)

    # -- Streaming / Completing -------------------------------------------

    async def run(self, session: StreamingSession) -> AsyncIterator[Envelope]:
        emitter = ProtocolEmitter(
            response_message_id=session.response_message_id,
            conversation_id=session.conversation.id,
            step_id=session.step_id,
        )
        upstream = None
        accumulator = None
        translator = None
        finished = False
        try:
            yield emitter.created(session.user_message.to_wire())

            session.advance(StreamState.STREAMING)
            options = session.resolved.stream_options(session.messages, self._default_max_tokens)
            upstream = session.provider.stream_response(options)
            accumulator = self._accumulate(session, upstream)
            translator = emitter.translate(
                accumulator,
                on_done=lambda done: self._complete(session, done),
                on_failure=lambda failure: self._fail(session, failure),
            )
            async for envelope in translator:
                yield envelope
            finished = True
        except Exception as ex:
            logger.exception(f"Streaming failed: conversation={session.conversation.id}, error={ex}")
            if session.state is not StreamState.FAILED:
                session.advance(StreamState.FAILED)
            finished = True
            if not emitter.terminated:
                text = ex.message if isinstance(ex, ChatBridgeError) else "Internal server error"
                yield emitter.error(text)
        finally:
            if not finished:
                self._background.spawn(
                    self._abandon(session, translator, accumulator, upstream),
                    name=f"abandon:{session.response_message_id}",
                )

    async def _accumulate(
        self,
        session: StreamingSession,
        events: AsyncIterator[StreamEvent],
    ) -> AsyncIterator[StreamEvent]:
        async for event in events:
            if isinstance(event, TextDelta):
                session.text_parts.append(event.text)
            yield event

    async def _complete(self, session: StreamingSession, done: StreamDone) -> FinalPayload:
        session.advance(StreamState.COMPLETING)
        session.token_count = done.token_count
        session.prompt_tokens = done.prompt_tokens
        session.finish_reason = done.finish_reason

        response = await self._save_response(session, finish_reason=done.finish_reason, error=False)
        try:
            await asyncio.to_thread(
                self._conversations.touch, session.conversation.id, session.user_id
            )
        except PersistenceError as ex:
            logger.error(f"Failed to touch conversation {session.conversation.id}: {ex}")

        if session.generate_title:
            self._schedule_title(session)

        wire = response.to_wire()
        wire.update(
            {
                "endpoint": session.resolved.kind.endpoint,
                "iconURL": session.resolved.icon_url,
                "promptTokens": session.prompt_tokens,
            }
        )
        session.advance(StreamState.DONE)
        logger.debug(
            f"Stream complete: conversation={session.conversation.id}, "
            f"response={session.response_message_id}, tokens={session.token_count}, "
            f"saved={session.save_error is None}"
        )
        return FinalPayload(
            conversation=session.conversation.to_wire(),
            title=session.conversation.title,
            request_message=session.user_message.to_wire(),
            response_message=wire,
        )

    async def _fail(self, session: StreamingSession, failure: StreamFailure) -> None:
        session.advance(StreamState.FAILED)
        session.provider_error = failure.error or ProviderError(failure.kind, failure.message)
        logger.warning(
            f"Provider failure: conversation={session.conversation.id}, kind={failure.kind.value}, "
            f"error={failure.message}"
        )
        if session.text:
            await self._save_response(session, finish_reason="error", error=True)

    async def _abandon(self, session: StreamingSession, *streams) -> None:
        """Close the provider stream after a disconnect and keep whatever text arrived."""
        was_streaming = session.state is StreamState.STREAMING
        if session.state is not StreamState.FAILED:
            session.advance(StreamState.FAILED)
        for stream in streams:
            if stream is None:
                continue
            try:
                await stream.aclose()
            except Exception as ex:
                logger.warning(f"Error closing provider stream: {ex}")
        logger.info(
            f"Client disconnected: conversation={session.conversation.id}, "
            f"response={session.response_message_id}, partial_chars={len(session.text)}"
        )
        if was_streaming and session.text:
            await self._save_response(session, finish_reason="cancelled", error=False)

    async def _save_response(
        self,
        session: StreamingSession,
        *,
        finish_reason: str,
        error: bool,
    ) -> MessageRecord:
        """Persist the assistant message.

        A failed write is logged and kept on ``session.save_error``; the caller
        still gets a record so an already-streamed reply can be finalized.
        """
        record = MessageRecord(
            id=session.response_message_id,
            conversation_id=session.conversation.id,
            parent_message_id=session.user_message.id,
            user_id=session.user_id,
            sender=session.resolved.sender,
            text=session.text,
            is_created_by_user=False,
            model=session.resolved.model,
            error=error,
            finish_reason=finish_reason,
            token_count=session.token_count,
        )
        try:
            if session.is_edit:
                saved = await asyncio.to_thread(
                    self._messages.update,
                    record.id,
                    session.user_id,
                    MessagePatch(
                        text=record.text,
                        error=error,
                        finish_reason=finish_reason,
                        token_count=record.token_count,
                    ),
                )
                if saved is not None:
                    return saved
                logger.warning(f"Response message vanished before update, recreating: {record.id}")
            return await asyncio.to_thread(self._messages.create, record)
        except PersistenceError as ex:
            logger.error(f"Failed to persist response message {record.id}: {ex.message}")
            session.save_error = ex
            now = utc_now()
            return replace(record, created_at=now, updated_at=now)

    # -- titles -----------------------------------------------------------

    def _schedule_title(self, session: StreamingSession) -> None:
        generator = self._title_generators.get(session.resolved.kind)
        if generator is None or self._title_handoff is None:
            logger.debug(f"Title generation unavailable for provider={session.resolved.kind.value}")
            return
        self._background.spawn(
            self._generate_title(
                generator,
                session.user_id,
                session.conversation.id,
                session.user_message.text,
                session.text,
            ),
            name=f"title:{session.conversation.id}",
        )

    async def _generate_title(
        self,
        generator: TitleGenerator,
        user_id: str,
        conversation_id: str,
        user_text: str,
        response_text: str,
    ) -> None:
        try:
            title = await generator.generate(user_text, response_text)
            await self._title_handoff.publish(user_id, conversation_id, title)
            logger.info(f"Generated title for conversation={conversation_id}: {title!r}")
        except Exception as ex:
            logger.warning(f"Title generation failed for conversation={conversation_id}: {ex}")
