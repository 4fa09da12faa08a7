from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from pathforge.db.models import StoredToken
from pathforge.types import AuthTokens

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"

InvalidationHook = Callable[[], None]


class TokenStore(Protocol):
    def get_token(self) -> str | None: ...

    def get_refresh_token(self) -> str | None: ...

    def set_tokens(self, tokens: AuthTokens) -> None: ...

    def clear_tokens(self) -> None: ...

    def invalidate(self) -> None: ...


class MemoryTokenStore:
    def __init__(self, tokens: AuthTokens | None = None, *, on_invalidated: InvalidationHook | None = None):
        self._access = tokens.access_token if tokens else None
        self._refresh = tokens.refresh_token if tokens else None
        self.on_invalidated = on_invalidated
        self.invalidated = False

    def get_token(self) -> str | None:
        return self._access

    def get_refresh_token(self) -> str | None:
        return self._refresh

    def set_tokens(self, tokens: AuthTokens) -> None:
        self._access = tokens.access_token
        self._refresh = tokens.refresh_token
        self.invalidated = False

    def clear_tokens(self) -> None:
        self._access = None
        self._refresh = None

    def invalidate(self) -> None:
        self.clear_tokens()
        self.invalidated = True
        if self.on_invalidated is not None:
            self.on_invalidated()


class SqlTokenStore:
    """Token pair persisted in the local SQLite database between CLI sessions."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        on_invalidated: InvalidationHook | None = None,
    ):
        if session_factory is None:
            from pathforge.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.on_invalidated = on_invalidated

    def get_token(self) -> str | None:
        return self._read(ACCESS_TOKEN_KEY)

    def get_refresh_token(self) -> str | None:
        return self._read(REFRESH_TOKEN_KEY)

    def set_tokens(self, tokens: AuthTokens) -> None:
        with self.session_factory() as session:
            session.merge(StoredToken(name=ACCESS_TOKEN_KEY, value=tokens.access_token))
            session.merge(StoredToken(name=REFRESH_TOKEN_KEY, value=tokens.refresh_token))
            session.commit()

    def clear_tokens(self) -> None:
        with self.session_factory() as session:
            session.execute(delete(StoredToken))
            session.commit()

    def invalidate(self) -> None:
        logger.info("Session invalidated; stored tokens cleared")
        self.clear_tokens()
        if self.on_invalidated is not None:
            self.on_invalidated()

    def _read(self, name: str) -> str | None:
        with self.session_factory() as session:
            row = session.get(StoredToken, name)
            return row.value if row else None
