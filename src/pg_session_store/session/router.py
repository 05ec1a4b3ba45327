from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_session_store
from .schemas import DeleteResponse, SessionCountResponse, SessionPayloadResponse
from .store import PostgresSessionStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("/count", response_model=SessionCountResponse)
async def count_sessions(
    store: PostgresSessionStore = Depends(get_session_store),
) -> SessionCountResponse:
    total = await store.length()
    return SessionCountResponse(total=total or 0)


@router.get("/{sid}", response_model=SessionPayloadResponse)
async def get_session(
    sid: str,
    store: PostgresSessionStore = Depends(get_session_store),
) -> SessionPayloadResponse:
    session = await store.get(sid)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return SessionPayloadResponse(sid=sid, session=session)


@router.delete("/{sid}", response_model=DeleteResponse)
async def delete_session(
    sid: str,
    store: PostgresSessionStore = Depends(get_session_store),
) -> DeleteResponse:
    await store.destroy(sid)
    return DeleteResponse(success=True)


@router.delete("", response_model=DeleteResponse)
async def clear_sessions(
    store: PostgresSessionStore = Depends(get_session_store),
) -> DeleteResponse:
    await store.clear()
    return DeleteResponse(success=True)
