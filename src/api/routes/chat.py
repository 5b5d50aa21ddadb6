import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from api.dependencies import get_relay
from chat.cancellation import CancellationToken
from chat.errors import TurnValidationError
from chat.models import TurnRequest
from chat.relay import StreamRelay

router = APIRouter()

logger = logging.getLogger("ChatRoute")


async def stream_turn(
    frames: AsyncIterator[bytes], token: CancellationToken
) -> AsyncIterator[bytes]:
    try:
        async for frame in frames:
            yield frame
    finally:
        # Turn finished or client went away; release anything still waiting on it
        token.cancel()


@router.post(
    "",
    summary="Start a turn and stream the agent's events"
)
async def start_turn(
    request: Request,
    relay: StreamRelay = Depends(get_relay),
):
    try:
        body = await request.json()
        turn = TurnRequest.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.debug(f"Rejected turn-start body: {e}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=TurnValidationError().to_response(),
        )

    token = CancellationToken()
    try:
        frames = await relay.handle(turn, token)
    except TurnValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=e.to_response(),
        )

    return EventSourceResponse(
        stream_turn(frames, token),
        headers={"Cache-Control": "no-cache"},
    )
