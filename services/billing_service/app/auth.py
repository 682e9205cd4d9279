"""Session cookie authentication for the billing service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from infra import UserSession

logger = logging.getLogger(__name__)


def resolve_session(db: Session, session_id: str, *, now: datetime | None = None) -> Tuple[str, str | None] | None:
    """Return ``(user_id, email)`` for a live session, ``None`` otherwise."""

    now = now or datetime.now(timezone.utc)
    user_session = db.scalar(
        select(UserSession).where(
            UserSession.session_id == session_id,
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > now,
        )
    )
    if user_session is None:
        return None
    user_session.last_activity = now
    db.commit()
    return user_session.user_id, user_session.email


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Resolve the session cookie and populate ``request.state.customer_id``.

    Requests without a valid session pass through unauthenticated; routes
    depending on ``get_actor_id`` answer 401 for them.
    """

    def __init__(
        self,
        app,
        *,
        session_factory: Callable[[], Session],
        cookie_name: str,
        skip_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self._session_factory = session_factory
        self._cookie_name = cookie_name
        self._skip_paths = set(skip_paths)

    def _lookup(self, session_id: str) -> Tuple[str, str | None] | None:
        db = self._session_factory()
        try:
            return resolve_session(db, session_id)
        finally:
            db.close()

    async def dispatch(self, request: Request, call_next):
        session_id = request.cookies.get(self._cookie_name)
        if session_id and request.url.path not in self._skip_paths:
            identity = await run_in_threadpool(self._lookup, session_id)
            if identity is None:
                logger.info("Ignoring unknown or expired session on %s", request.url.path)
            else:
                request.state.customer_id, request.state.customer_email = identity
        return await call_next(request)


__all__ = ["SessionAuthMiddleware", "resolve_session"]
