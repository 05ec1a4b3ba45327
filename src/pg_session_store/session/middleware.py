from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .store import PostgresSessionStore

logger = logging.getLogger(__name__)


def get_request_session(request: Request) -> dict[str, Any]:
    """Return the mutable session dict attached by :class:`StoreSessionMiddleware`."""
    return request.state.session


def destroy_request_session(request: Request) -> None:
    """Mark the current session for deletion once the response is produced."""
    request.state.session_destroyed = True


class StoreSessionMiddleware(BaseHTTPMiddleware):
    """Cookie session middleware persisting session dicts through a :class:`PostgresSessionStore`.

    The store is looked up per request through ``store_provider`` so that it can
    be created later, in the application lifespan.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        store_provider: Callable[[], PostgresSessionStore],
        cookie_name: str = "sid",
        max_age: Optional[int] = None,
        path: str = "/",
        secure: bool = False,
        same_site: Literal["lax", "strict", "none"] = "lax",
        save_uninitialized: bool = True,
    ) -> None:
        super().__init__(app)
        self._store_provider = store_provider
        self._cookie_name = cookie_name
        self._max_age = max_age
        self._path = path
        self._secure = secure
        self._same_site = same_site
        self._save_uninitialized = save_uninitialized

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        store = self._store_provider()
        sid = request.cookies.get(self._cookie_name)
        session = await store.get(sid) if sid else None
        is_new = session is None
        if session is None:
            sid = uuid4().hex
            session = {}

        request.state.session = session
        request.state.session_id = sid
        request.state.session_destroyed = False
        fingerprint = _fingerprint(session)

        response = await call_next(request)

        if request.state.session_destroyed:
            await store.destroy(sid)
            response.delete_cookie(self._cookie_name, path=self._path)
            return response

        session = request.state.session
        if is_new and not self._save_uninitialized and not _payload(session):
            return response

        max_age = self._max_age or store.ttl
        expires = datetime.now(timezone.utc) + timedelta(seconds=max_age)
        session["cookie"] = {"expires": expires.isoformat(), "path": self._path}

        if is_new or _fingerprint(session) != fingerprint:
            await store.set(sid, session)
        else:
            await store.touch(sid, session)
            logger.debug("Touched unchanged session %s", sid)

        response.set_cookie(
            self._cookie_name,
            sid,
            max_age=max_age,
            path=self._path,
            secure=self._secure,
            httponly=True,
            samesite=self._same_site,
        )
        return response


def _payload(session: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in session.items() if key != "cookie"}


def _fingerprint(session: dict[str, Any]) -> str:
    return json.dumps(_payload(session), sort_keys=True, default=str)
