"""Session persistence over a key-value collaborator.

The durable backend is external: anything that implements ``KeyValueStore``
(async ``get``/``set``/``delete`` of JSON-compatible values). ``MemoryStore``
is the in-process implementation used by default and in tests.

``ChatStorage`` owns the session namespace:
  - sessions/<id>    : one serialized Session per key
  - sessions-index   : list of known session ids, oldest first
  - active-session   : id of the session to resume at startup
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from chatwrap_constants import ACTIVE_SESSION_KEY, SESSIONS_INDEX_KEY, SESSIONS_KEY_PREFIX
from conversation.errors import PersistenceError
from conversation.models import Session, new_id, utcnow

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process KeyValueStore.

    Values are stored as JSON text so callers never share mutable state with
    the store, the same as with a real backend.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class ChatStorage:
    """Saves, loads, exports and imports sessions."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{SESSIONS_KEY_PREFIX}{session_id}"

    async def _get(self, key: str) -> Optional[Any]:
        try:
            return await self._store.get(key)
        except Exception as e:
            raise PersistenceError(f"Failed to read {key}: {e}") from e

    async def _set(self, key: str, value: Any) -> None:
        try:
            await self._store.set(key, value)
        except Exception as e:
            raise PersistenceError(f"Failed to write {key}: {e}") from e

    async def _delete(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except Exception as e:
            raise PersistenceError(f"Failed to delete {key}: {e}") from e

    async def _session_ids(self) -> List[str]:
        index = await self._get(SESSIONS_INDEX_KEY)
        return list(index) if isinstance(index, list) else []

    # ----- Sessions -----

    async def save_session(self, session: Session) -> None:
        """Write the full session and mark it as the active one."""
        await self._set(self._session_key(session.id), session.model_dump(mode="json"))
        ids = await self._session_ids()
        if session.id not in ids:
            ids.append(session.id)
            await self._set(SESSIONS_INDEX_KEY, ids)
        await self._set(ACTIVE_SESSION_KEY, session.id)

    async def load_session(self, session_id: str) -> Optional[Session]:
        raw = await self._get(self._session_key(session_id))
        if raw is None:
            return None
        if isinstance(raw, dict) and isinstance(raw.get("threads"), dict):
            active_id = raw.get("active_thread_id")
            if active_id is not None and active_id not in raw["threads"]:
                logger.warning("Session %s points at missing thread %s; resetting", session_id, active_id)
                raw["active_thread_id"] = next(iter(raw["threads"]), None)
        try:
            return Session.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Stored session {session_id} is invalid: {e}") from e

    async def get_active_session_id(self) -> Optional[str]:
        value = await self._get(ACTIVE_SESSION_KEY)
        return value if isinstance(value, str) else None

    async def get_all_sessions(self) -> List[Session]:
        """Every stored session that still validates, in creation order."""
        sessions = []
        for session_id in await self._session_ids():
            try:
                session = await self.load_session(session_id)
            except PersistenceError as e:
                logger.warning("Skipping unreadable session %s: %s", session_id, e)
                continue
            if session is not None:
                sessions.append(session)
        return sessions

    async def delete_session(self, session_id: str) -> None:
        await self._delete(self._session_key(session_id))
        ids = [i for i in await self._session_ids() if i != session_id]
        await self._set(SESSIONS_INDEX_KEY, ids)
        if await self.get_active_session_id() == session_id:
            await self._delete(ACTIVE_SESSION_KEY)

    # ----- Export / import -----

    async def export_session(self, session_id: str) -> str:
        session = await self.load_session(session_id)
        if session is None:
            raise PersistenceError(f"Session {session_id} not found")
        return json.dumps(session.model_dump(mode="json"), indent=2, ensure_ascii=False)

    async def import_session(self, session_data: str) -> Session:
        """Validate exported JSON and save it under a fresh id."""
        try:
            session = Session.model_validate(json.loads(session_data))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PersistenceError(f"Invalid session data format: {e}") from e

        now = utcnow()
        imported = session.model_copy(update={"id": new_id("session"), "created_at": now, "updated_at": now})
        await self.save_session(imported)
        logger.info("Imported session %s as %s", session.id, imported.id)
        return imported

    async def clear_all_data(self) -> None:
        for session_id in await self._session_ids():
            await self._delete(self._session_key(session_id))
        await self._delete(SESSIONS_INDEX_KEY)
        await self._delete(ACTIVE_SESSION_KEY)
