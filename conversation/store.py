"""
Conversation Store

Owns the active session and every command that changes it: thread
management, sending and streaming messages through the plugin pipeline and
the model client, edit/delete/regenerate, settings, and autosave.

Each command replaces ``self.session`` with a new immutable snapshot.
Commands against one session run one at a time under a per-session lock,
so a send that is waiting on the model API holds off an edit issued
meanwhile until the assistant reply has been appended.

Usage:
    store = ConversationStore(client, plugins, ChatStorage(MemoryStore()))
    await store.initialize()
    reply = await store.send_message("Hello")
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from client.errors import ApiError
from client.model_client import MessageRequest, ModelClient
from conversation.errors import (
    MessageNotFoundError,
    NoActiveThreadError,
    PersistenceError,
    StateError,
    ThreadNotFoundError,
)
from conversation.models import (
    DEFAULT_THREAD_TITLE,
    Message,
    MessageMetadata,
    SendMessageOptions,
    Session,
    Settings,
    Thread,
    utcnow,
)
from conversation.storage import ChatStorage
from plugins.base import PluginContext
from plugins.manager import PluginManager

logger = logging.getLogger(__name__)

TITLE_WORDS = 4

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


def derive_title(content: str) -> str:
    """First few words of the opening message, with '...' when truncated."""
    words = content.split()
    if not words:
        return DEFAULT_THREAD_TITLE
    title = " ".join(words[:TITLE_WORDS])
    return title + "..." if len(words) > TITLE_WORDS else title


def context_window(messages: Sequence[Message], size: int) -> Tuple[Message, ...]:
    return tuple(messages[-size:]) if size > 0 else ()


class ConversationStore:
    """Session/thread/message state machine backed by ``ChatStorage``."""

    def __init__(
        self,
        client: ModelClient,
        plugins: PluginManager,
        storage: ChatStorage,
        default_settings: Optional[Settings] = None,
    ):
        self._client = client
        self._plugins = plugins
        self._storage = storage
        self._default_settings = default_settings or Settings()
        self._session: Optional[Session] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._loading = False
        self._error: Optional[str] = None

    # -- Observable state --------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def active_thread(self) -> Optional[Thread]:
        return self._session.active_thread if self._session else None

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        """User-visible message for the last failed command, if any."""
        return self._error

    # -- Internal helpers --------------------------------------------------------

    def _lock(self) -> asyncio.Lock:
        session = self._require_session()
        lock = self._locks.get(session.id)
        if lock is None:
            lock = self._locks[session.id] = asyncio.Lock()
        return lock

    def _require_session(self) -> Session:
        if self._session is None:
            raise StateError("No session loaded")
        return self._session

    def _require_active_thread(self) -> Thread:
        thread = self.active_thread
        if thread is None:
            raise NoActiveThreadError()
        return thread

    def _get_thread(self, thread_id: str) -> Thread:
        thread = self._require_session().threads.get(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    async def _commit(self, session: Session) -> None:
        self._session = session
        if session.settings.auto_save:
            await self._persist(session)

    async def _persist(self, session: Session) -> None:
        try:
            await self._storage.save_session(session)
        except PersistenceError as e:
            logger.warning("Autosave of session %s failed: %s", session.id, e)
            self._error = str(e)

    async def _commit_thread(self, thread: Thread, **session_updates: Any) -> None:
        await self._commit(self._require_session().with_thread(thread, **session_updates))

    async def _update_thread(self, thread_id: str, **updates: Any) -> Thread:
        thread = self._get_thread(thread_id)
        updated = thread.model_copy(update={**updates, "updated_at": utcnow()})
        await self._commit_thread(updated)
        return updated

    def _sync_plugin_context(self) -> None:
        session = self._session
        thread = self.active_thread
        self._plugins.set_context(
            PluginContext(
                messages=thread.messages if thread else (),
                settings=session.settings if session else None,
                active_thread_id=thread.id if thread else None,
                session_id=session.id if session else None,
            )
        )

    def _ensure_thread(self, session: Session) -> Session:
        """Give a loaded session an active thread, creating one if it has none."""
        if session.active_thread_id is not None:
            return session
        if session.threads:
            first_id = next(iter(session.threads))
            return session.model_copy(update={"active_thread_id": first_id})
        thread = Thread()
        return session.with_thread(thread, active_thread_id=thread.id)

    # -- Sessions ----------------------------------------------------------------

    async def initialize(self) -> Session:
        """Resume the active session from storage, or start a fresh one."""
        self._loading = True
        try:
            session = None
            try:
                active_id = await self._storage.get_active_session_id()
                if active_id:
                    session = await self._storage.load_session(active_id)
            except PersistenceError as e:
                logger.warning("Could not resume the active session: %s", e)
                self._error = "Failed to initialize session"

            if session is None:
                return await self.create_session()

            repaired = self._ensure_thread(session)
            if repaired is not session:
                await self._commit(repaired)
            else:
                self._session = session
            logger.info("Resumed session %s (%d threads)", session.id, len(repaired.threads))
            return repaired
        finally:
            self._loading = False

    async def create_session(self) -> Session:
        """Start a new session with default settings and one empty thread."""
        thread = Thread()
        session = Session(settings=self._default_settings).with_thread(thread, active_thread_id=thread.id)
        self._session = session
        await self._persist(session)
        self._sync_plugin_context()
        await self._plugins.execute_on_thread_create(thread.id)
        logger.info("Created session %s", session.id)
        return session

    async def load_session(self, session_id: str) -> Session:
        self._loading = True
        try:
            try:
                session = await self._storage.load_session(session_id)
            except PersistenceError:
                self._error = "Failed to load session"
                raise
            if session is None:
                self._error = "Failed to load session"
                raise StateError(f"Session {session_id} not found")
            session = self._ensure_thread(session)
            self._session = session
            return session
        finally:
            self._loading = False

    async def save_session(self) -> None:
        """Save the current session now, whatever the autosave setting."""
        if self._session is None:
            return
        try:
            await self._storage.save_session(self._session)
        except PersistenceError:
            self._error = "Failed to save session"
            raise

    # -- Threads -----------------------------------------------------------------

    async def create_thread(self, title: str = DEFAULT_THREAD_TITLE) -> str:
        """Add an empty thread, make it active and return its id."""
        async with self._lock():
            thread = Thread(title=title)
            await self._commit_thread(thread, active_thread_id=thread.id)
            self._sync_plugin_context()
            await self._plugins.execute_on_thread_create(thread.id)
            return thread.id

    async def switch_thread(self, thread_id: str) -> Thread:
        async with self._lock():
            thread = self._get_thread(thread_id)
            session = self._require_session()
            await self._commit(session.model_copy(update={"active_thread_id": thread.id, "updated_at": utcnow()}))
            return thread

    async def delete_thread(self, thread_id: str) -> None:
        """Remove a thread. Deleting the active one activates the first remaining."""
        async with self._lock():
            self._get_thread(thread_id)
            session = self._require_session()
            threads = {tid: t for tid, t in session.threads.items() if tid != thread_id}
            active_id = session.active_thread_id
            if active_id == thread_id:
                active_id = next(iter(threads), None)
            await self._commit(
                session.model_copy(update={"threads": threads, "active_thread_id": active_id, "updated_at": utcnow()})
            )

    async def archive_thread(self, thread_id: str) -> Thread:
        async with self._lock():
            return await self._update_thread(thread_id, is_archived=True)

    async def unarchive_thread(self, thread_id: str) -> Thread:
        async with self._lock():
            return await self._update_thread(thread_id, is_archived=False)

    async def update_thread_title(self, thread_id: str, title: str) -> Thread:
        async with self._lock():
            return await self._update_thread(thread_id, title=title.strip() or DEFAULT_THREAD_TITLE)

    async def tag_thread(self, thread_id: str, tags: Iterable[str]) -> Thread:
        """Replace a thread's tags."""
        async with self._lock():
            clean = frozenset(t.strip() for t in tags if t and t.strip())
            return await self._update_thread(thread_id, tags=clean)

    # -- Messages ----------------------------------------------------------------

    async def send_message(self, content: str, options: Optional[SendMessageOptions] = None) -> Message:
        """Send user text to the model and return the appended assistant message.

        The user message is appended (and autosaved) before the model is
        called. If the call fails the user message stays, ``error`` is set and
        the ApiError is re-raised.
        """
        async with self._lock():
            return await self._send(content, options or SendMessageOptions(), on_chunk=None)

    async def stream_message(
        self,
        content: str,
        on_chunk: ChunkCallback,
        options: Optional[SendMessageOptions] = None,
    ) -> Message:
        """Like send_message, forwarding text deltas to ``on_chunk`` as they arrive."""
        async with self._lock():
            return await self._send(content, options or SendMessageOptions(), on_chunk=on_chunk)

    async def _send(self, content: str, options: SendMessageOptions, on_chunk: Optional[ChunkCallback]) -> Message:
        thread = self._require_active_thread()
        self._error = None
        self._loading = True
        try:
            self._sync_plugin_context()
            content = await self._plugins.execute_before_send_message(content)

            history = thread.messages
            user_message = Message(
                role="user",
                content=content.strip(),
                thread_id=thread.id,
                parent_id=options.parent_id,
            )
            await self._commit_thread(thread.with_messages(history + (user_message,)))

            window = self._require_session().settings.context_window
            context = context_window(history, window) + (user_message,)
            assistant = await self._complete(thread.id, context, user_message, options, on_chunk)

            if not history:
                await self._update_thread(thread.id, title=derive_title(user_message.content))
            return assistant
        finally:
            self._loading = False

    async def _complete(
        self,
        thread_id: str,
        context: Sequence[Message],
        parent: Message,
        options: SendMessageOptions,
        on_chunk: Optional[ChunkCallback],
    ) -> Message:
        """Ask the model for a reply to ``context`` and append it to the thread."""
        settings = self._require_session().settings
        request = MessageRequest(
            messages=[{"role": m.role, "content": m.content} for m in context if m.role != "system"],
            model=settings.model,
            max_tokens=options.max_tokens if options.max_tokens is not None else settings.max_tokens,
            temperature=options.temperature if options.temperature is not None else settings.temperature,
            system_prompt=options.system_prompt if options.system_prompt is not None else settings.system_prompt,
        )

        try:
            if on_chunk is None:
                response = await self._client.send_message(request)
                text, model, tokens, duration_ms = response.text, response.model, response.tokens, response.duration_ms
            else:
                started = time.monotonic()
                parts: List[str] = []
                async for delta in self._client.stream_text(request):
                    parts.append(delta)
                    result = on_chunk(delta)
                    if inspect.isawaitable(result):
                        await result
                text, model, tokens = "".join(parts), request.model, None
                duration_ms = int((time.monotonic() - started) * 1000)
        except ApiError as e:
            logger.error("Model request for thread %s failed: %s", thread_id, e)
            self._error = f"Failed to send message: {e}"
            raise

        assistant = Message(
            role="assistant",
            content=text,
            thread_id=thread_id,
            parent_id=parent.id,
            metadata=MessageMetadata(
                model=model,
                tokens=tokens,
                duration_ms=duration_ms,
                temperature=request.temperature,
            ),
        )
        self._sync_plugin_context()
        assistant = await self._plugins.execute_after_receive_message(assistant)

        thread = self._get_thread(thread_id)
        await self._commit_thread(thread.with_messages(thread.messages + (assistant,)))
        return assistant

    async def edit_message(self, message_id: str, content: str) -> Message:
        """Rewrite one message's content. Messages around it are untouched."""
        async with self._lock():
            thread = self._require_active_thread()
            index = thread.index_of(message_id)
            if index < 0:
                raise MessageNotFoundError(message_id)
            edited = thread.messages[index].model_copy(update={"content": content})
            messages = thread.messages[:index] + (edited,) + thread.messages[index + 1:]
            await self._commit_thread(thread.with_messages(messages))
            self._sync_plugin_context()
            await self._plugins.execute_on_message_edit(message_id, content)
            return edited

    async def delete_message(self, message_id: str) -> None:
        async with self._lock():
            thread = self._require_active_thread()
            if thread.index_of(message_id) < 0:
                raise MessageNotFoundError(message_id)
            messages = tuple(m for m in thread.messages if m.id != message_id)
            await self._commit_thread(thread.with_messages(messages))

    async def regenerate_message(self, message_id: str) -> Optional[Message]:
        """Replace an assistant reply, and everything after it, with a fresh one.

        The thread is cut back to just before ``message_id`` and the model is
        asked again with the reply's parent user message as the last context
        entry. Returns None without changes when ``message_id`` is not an
        assistant message whose parent is an earlier user message in the active
        thread.

        Truncation is positional: any message after the target is dropped,
        even if it belongs to a different branch of the parent_id tree.
        """
        async with self._lock():
            thread = self._require_active_thread()
            index = thread.index_of(message_id)
            if index < 0:
                return None
            target = thread.messages[index]
            if target.role != "assistant" or target.parent_id is None:
                return None
            kept = thread.messages[:index]
            parent_index = next((i for i, m in enumerate(kept) if m.id == target.parent_id), -1)
            if parent_index < 0:
                return None
            parent = kept[parent_index]
            if parent.role != "user":
                return None

            self._error = None
            self._loading = True
            try:
                await self._commit_thread(thread.with_messages(kept))
                window = self._require_session().settings.context_window
                context = context_window(kept[:parent_index], window) + (parent,)
                return await self._complete(thread.id, context, parent, SendMessageOptions(), on_chunk=None)
            finally:
                self._loading = False

    async def clear_context(self) -> None:
        """Drop every message from the active thread. No-op without one."""
        async with self._lock():
            thread = self.active_thread
            if thread is None:
                return
            await self._commit_thread(thread.with_messages(()))

    def get_context_messages(self, max_messages: Optional[int] = None) -> List[Message]:
        """The last ``max_messages`` (default: the context window) of the active thread."""
        thread = self.active_thread
        if thread is None:
            return []
        if max_messages is None:
            max_messages = self._require_session().settings.context_window
        return list(context_window(thread.messages, max_messages))

    # -- Settings ----------------------------------------------------------------

    async def update_settings(self, patch: Mapping[str, Any]) -> Settings:
        """Merge and validate ``patch``. Invalid values raise and change nothing."""
        async with self._lock():
            session = self._require_session()
            settings = session.settings.merged(patch)
            await self._commit(session.model_copy(update={"settings": settings, "updated_at": utcnow()}))
            self._sync_plugin_context()
            await self._plugins.execute_on_settings_change(patch)
            return settings
