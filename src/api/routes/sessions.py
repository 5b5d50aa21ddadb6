from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_session_store
from api.models.schemas import (
    SessionCreateRequest,
    SessionListResponse,
    SessionResponse,
    SessionSummary,
)
from chat.session import SessionStore

router = APIRouter()


@router.get(
    "",
    response_model=SessionListResponse,
    summary="List chat sessions, newest first"
)
async def list_sessions(
    store: SessionStore = Depends(get_session_store),
) -> SessionListResponse:
    sessions = await store.list_sessions()
    return SessionListResponse(
        sessions=[SessionSummary.from_session(s) for s in sessions]
    )


@router.post(
    "",
    response_model=SessionResponse,
    summary="Create a chat session"
)
async def create_session(
    body: Optional[SessionCreateRequest] = None,
    store: SessionStore = Depends(get_session_store),
) -> SessionResponse:
    session_id = body.session_id if body else None
    title = body.title if body else None
    if session_id and await store.get_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {session_id} already exists",
        )

    session = await store.create_session(session_id)
    if title:
        await store.set_title(session.id, title)
    return SessionResponse(session=SessionSummary.from_session(session))


@router.delete(
    "/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a chat session"
)
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> None:
    if not await store.delete_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
