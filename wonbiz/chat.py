"""Chat over notes: retrieval-augmented conversation with persisted sessions."""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from .errors import ConversationBusy, NotFoundError, ValidationError, WonbizError
from .models import ROLE_MODEL, ROLE_USER, ChatMessage, ChatSession, Config, LLMConfig, Note, new_id, now_ms
from .providers import ChatCompletionProvider, DEFAULT_TEMPERATURE, get_provider
from .repository import ChatSessionRepository
from .search import RemoteSearch

logger = logging.getLogger(__name__)

CONTEXT_NOTES = 5
TITLE_WORDS = 6
TITLE_CHARS = 40

SYSTEM_PROMPT = (
    "You are a helpful AI assistant with access to the user's notes. Answer questions based on "
    "the provided context from the notes. If the answer is not in the context, say so. "
    "Be concise and helpful."
)
NO_RESPONSE = "No response generated"

MESSAGES = {
    "en": {
        "new_chat": "New Chat",
        "empty_reply": "I couldn't generate a response.",
        "error_reply": "Sorry, I encountered an error while processing your request.",
    },
    "zh": {
        "new_chat": "新建对话",
        "empty_reply": "我无法生成回复。",
        "error_reply": "抱歉，处理您的请求时出现错误。",
    },
}


class ChatState(str, enum.Enum):
    IDLE = "idle"
    RETRIEVING_CONTEXT = "retrieving_context"
    GENERATING = "generating"


class ChatBackend(Protocol):
    async def chat(
        self, context: str, history: List[Dict[str, str]], message: str, llm_config: LLMConfig
    ) -> str:
        ...


def generate_title(text: str) -> str:
    words = " ".join(text.split()[:TITLE_WORDS])
    return words[:TITLE_CHARS] + "..." if len(words) > TITLE_CHARS else words


def build_context(notes: Iterable[Note]) -> str:
    blocks = []
    for note in notes:
        date = datetime.fromtimestamp(note.created_at / 1000).strftime("%Y-%m-%d") if note.created_at else "unknown"
        blocks.append(
            f"Title: {note.title}\nDate: {date}\nSummary: {note.summary}\nTranscript: {note.transcript}"
        )
    return "\n\n---\n\n".join(blocks)


def to_history(messages: Iterable[ChatMessage]) -> List[Dict[str, str]]:
    return [
        {"role": "assistant" if m.role == ROLE_MODEL else "user", "content": m.text}
        for m in messages
    ]


def build_chat_messages(context: str, history: Iterable[Dict[str, str]], message: str) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    if context:
        messages.append({"role": "user", "content": f"Context from relevant notes:\n{context}"})
    for item in history:
        role = "assistant" if item.get("role") == "assistant" else "user"
        messages.append({"role": role, "content": item.get("content", "")})
    messages.append({"role": "user", "content": message})
    return messages


class ProviderChatBackend:
    """Server side chat completion through the selected provider."""

    def __init__(
        self,
        config: Config,
        provider_factory: Callable[[Config, LLMConfig], ChatCompletionProvider] = get_provider,
    ) -> None:
        self._config = config
        self._provider_factory = provider_factory

    async def chat(
        self, context: str, history: List[Dict[str, str]], message: str, llm_config: LLMConfig
    ) -> str:
        logger.info(
            "Chat request provider=%s model=%s context=%d history=%d",
            llm_config.provider,
            llm_config.model,
            len(context or ""),
            len(history or []),
        )
        provider = self._provider_factory(self._config, llm_config)
        reply = await provider.complete(build_chat_messages(context, history, message), DEFAULT_TEMPERATURE)
        return reply or NO_RESPONSE


class ChatConversationManager:
    """Keeps the session list, the active session and its message flow consistent.

    Every append schedules a full upsert of the session with a fresh
    ``updated_at`` and re-sorts the list, most recently active first. Sessions
    without messages are drafts and are not persisted.
    """

    def __init__(
        self,
        sessions: ChatSessionRepository,
        search: RemoteSearch,
        backend: ChatBackend,
        llm_config: LLMConfig,
        language: str = "en",
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
        context_size: int = CONTEXT_NOTES,
    ) -> None:
        self._repository = sessions
        self._search = search
        self._backend = backend
        self.llm_config = llm_config
        self._text = MESSAGES["zh" if language == "zh" else "en"]
        self._clock = clock
        self._id_factory = id_factory
        self._context_size = context_size
        self._states: Dict[str, ChatState] = {}
        self._persisted: Set[str] = set()
        self.sessions: List[ChatSession] = []
        self.current: Optional[ChatSession] = None
        self.sync_error: Optional[str] = None

    @property
    def default_title(self) -> str:
        return self._text["new_chat"]

    def state_of(self, session_id: str) -> ChatState:
        return self._states.get(session_id, ChatState.IDLE)

    @property
    def state(self) -> ChatState:
        return self.state_of(self.current.id) if self.current else ChatState.IDLE

    @property
    def can_send(self) -> bool:
        return self.state is ChatState.IDLE

    async def load(self) -> None:
        self.sessions = await self._repository.list_sessions()
        self._persisted.update(s.id for s in self.sessions)
        latest = await self._repository.latest_session()
        if latest is not None and latest.messages:
            self._persisted.add(latest.id)
            self.current = latest
        self._sort()

    def new_session(self) -> ChatSession:
        now = self._clock()
        session = ChatSession(id=self._id_factory(), title=self.default_title, created_at=now, updated_at=now)
        self.current = session
        return session

    def select_session(self, session_id: str) -> ChatSession:
        for session in self.sessions:
            if session.id == session_id:
                self.current = session
                return session
        raise NotFoundError(f"Chat session {session_id} not found")

    async def rename_session(self, session_id: str, title: str) -> ChatSession:
        if not title.strip():
            raise ValidationError("Session title cannot be empty")
        session = self._find(session_id)
        renamed = session.copy(title=title.strip())
        self._replace(renamed)
        if renamed.messages:
            await self._save(renamed)
        return renamed

    async def delete_session(self, session_id: str) -> None:
        if session_id in self._persisted:
            await self._repository.delete_session(session_id)
            self._persisted.discard(session_id)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        self._states.pop(session_id, None)
        if self.current is not None and self.current.id == session_id:
            if self.sessions:
                self.current = self.sessions[0]
            else:
                self.new_session()

    async def send_message(self, text: str) -> ChatMessage:
        """Append the user turn, retrieve context, generate, append the reply."""
        if not text or not text.strip():
            raise ValidationError("Message cannot be empty")
        session = self.current or self.new_session()
        if self.state_of(session.id) is not ChatState.IDLE:
            raise ConversationBusy("A reply is still being generated for this session")

        self._states[session.id] = ChatState.RETRIEVING_CONTEXT
        try:
            history = to_history(session.messages)
            user_message = ChatMessage(id=self._id_factory(), role=ROLE_USER, text=text, timestamp=self._clock())
            await self._append(session.id, user_message)

            notes: List[Note] = []
            try:
                notes = (await self._search.search_notes(text))[: self._context_size]
            except WonbizError as exc:
                logger.warning("Context retrieval failed, answering without notes: %s", exc)
            logger.debug("Using %d notes as chat context", len(notes))

            self._states[session.id] = ChatState.GENERATING
            try:
                reply = await self._backend.chat(build_context(notes), history, text, self.llm_config)
                reply = reply or self._text["empty_reply"]
            except WonbizError as exc:
                logger.error("Chat completion failed: %s", exc)
                reply = self._text["error_reply"]

            model_message = ChatMessage(id=self._id_factory(), role=ROLE_MODEL, text=reply, timestamp=self._clock())
            await self._append(session.id, model_message)
        finally:
            self._states.pop(session.id, None)
        return model_message

    def _find(self, session_id: str) -> ChatSession:
        if self.current is not None and self.current.id == session_id:
            return self.current
        for session in self.sessions:
            if session.id == session_id:
                return session
        raise NotFoundError(f"Chat session {session_id} not found")

    def _replace(self, session: ChatSession) -> None:
        if self.current is not None and self.current.id == session.id:
            self.current = session
        for index, existing in enumerate(self.sessions):
            if existing.id == session.id:
                self.sessions[index] = session
                break
        else:
            self.sessions.insert(0, session)
        self._sort()

    def _sort(self) -> None:
        self.sessions.sort(key=lambda s: s.updated_at, reverse=True)

    async def _append(self, session_id: str, message: ChatMessage) -> None:
        try:
            session = self._find(session_id)
        except NotFoundError:
            logger.info("Session %s was deleted, dropping message %s", session_id, message.id)
            return
        title = session.title
        if title == self.default_title and not session.messages:
            title = generate_title(message.text) or title
        updated = session.copy(messages=[*session.messages, message], updated_at=self._clock(), title=title)
        self._replace(updated)
        await self._save(updated)

    async def _save(self, session: ChatSession) -> None:
        try:
            await self._repository.save_session(session)
        except WonbizError as exc:
            logger.warning("Failed to save chat session %s: %s", session.id, exc)
            self.sync_error = str(exc)
            return
        self._persisted.add(session.id)
        self.sync_error = None
