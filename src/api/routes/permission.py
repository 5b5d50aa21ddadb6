import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.dependencies import get_permissions
from api.models.schemas import (
    DecisionRequest,
    DecisionResponse,
    PendingPermissionsResponse,
)
from chat.permissions import PermissionCoordinator

router = APIRouter()

logger = logging.getLogger("PermissionRoute")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(
    "",
    response_model=DecisionResponse,
    summary="Submit a decision for a pending permission request"
)
async def submit_decision(
    request: Request,
    permissions: PermissionCoordinator = Depends(get_permissions),
):
    try:
        body = await request.json()
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    if (
        not isinstance(body, dict)
        or not body.get("permissionRequestId")
        or not body.get("decision")
    ):
        return _error(
            status.HTTP_400_BAD_REQUEST, "Missing permissionRequestId or decision"
        )

    try:
        decision_request = DecisionRequest.model_validate(body)
    except ValidationError as e:
        logger.debug(f"Invalid decision body: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid decision format")

    resolved = permissions.resolve(
        decision_request.permission_request_id, decision_request.to_decision()
    )
    if not resolved:
        return _error(
            status.HTTP_404_NOT_FOUND,
            "Permission request not found or already resolved",
        )

    return DecisionResponse(success=True, resolved=True)


@router.get(
    "",
    response_model=PendingPermissionsResponse,
    summary="List pending permission requests"
)
async def list_pending(
    permissions: PermissionCoordinator = Depends(get_permissions),
) -> PendingPermissionsResponse:
    return PendingPermissionsResponse(pending=permissions.pending_ids())
