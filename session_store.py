import json
import logging
import threading
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Mapping, Optional

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, init_db, session_scope
from models import SessionEntry, SessionKey

logger = logging.getLogger(__name__)


def _encode_user(user: Optional[Mapping[str, Any]]) -> Optional[str]:
    if user is None:
        return None
    return json.dumps(dict(user))


def _decode_user(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("session_store: stored user profile is corrupt, ignoring")
        return None
    if not isinstance(data, dict):
        logger.warning("session_store: stored user profile is not an object, ignoring")
        return None
    return data


class SessionStore(ABC):
    """Access token, refresh token and user profile of the current session.

    Subclasses implement ``_read``, ``_write`` and ``_remove_all``; locking
    lives here so every read, write and clear is serialized across threads.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self, key: SessionKey) -> Optional[str]: ...

    @abstractmethod
    def _write(self, values: dict[SessionKey, Optional[str]]) -> None: ...

    @abstractmethod
    def _remove_all(self) -> None: ...

    def set_session(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        user: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._write(
                {
                    SessionKey.access_token: access_token,
                    SessionKey.refresh_token: refresh_token,
                    SessionKey.user: _encode_user(user),
                }
            )

    def set_access_token(self, access_token: str) -> None:
        with self._lock:
            self._write({SessionKey.access_token: access_token})

    def set_user(self, user: Mapping[str, Any]) -> None:
        with self._lock:
            self._write({SessionKey.user: _encode_user(user)})

    def get_access_token(self) -> Optional[str]:
        with self._lock:
            return self._read(SessionKey.access_token) or None

    def get_refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._read(SessionKey.refresh_token) or None

    def get_user(self) -> Optional[dict[str, Any]]:
        with self._lock:
            return _decode_user(self._read(SessionKey.user))

    def clear(self) -> None:
        with self._lock:
            self._remove_all()

    def is_authenticated(self) -> bool:
        # expiry is only discovered when a request comes back 401
        return self.get_access_token() is not None


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        super().__init__()
        self._values: dict[SessionKey, str] = {}

    def _read(self, key: SessionKey) -> Optional[str]:
        return self._values.get(key)

    def _write(self, values: dict[SessionKey, Optional[str]]) -> None:
        for key, value in values.items():
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = value

    def _remove_all(self) -> None:
        self._values.clear()


class SQLSessionStore(SessionStore):
    """Keeps the session in the ``session_entries`` table so it survives restarts."""

    def __init__(self, factory: sessionmaker = SessionLocal) -> None:
        super().__init__()
        self.factory = factory

    def _read(self, key: SessionKey) -> Optional[str]:
        with session_scope(self.factory) as session:
            entry = session.get(SessionEntry, key.value)
            return entry.value if entry else None

    def _write(self, values: dict[SessionKey, Optional[str]]) -> None:
        with session_scope(self.factory) as session:
            for key, value in values.items():
                entry = session.get(SessionEntry, key.value)
                if value is None:
                    if entry is not None:
                        session.delete(entry)
                    continue
                if entry is None:
                    session.add(SessionEntry(key=key.value, value=value))
                else:
                    entry.value = value

    def _remove_all(self) -> None:
        with session_scope(self.factory) as session:
            session.execute(delete(SessionEntry))


@lru_cache(maxsize=1)
def get_default_store() -> SessionStore:
    init_db()
    return SQLSessionStore()
