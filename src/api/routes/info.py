from fastapi import APIRouter, Depends, status
from typing import Dict, Any

from config import Settings
from api.dependencies import get_app_settings, get_permissions
from chat.permissions import PermissionCoordinator

router = APIRouter()


@router.get(
    "/",
    status_code=status.HTTP_200_OK,
    summary="Get system information"
)
async def get_info(settings: Settings = Depends(get_app_settings)) -> Dict[str, Any]:
    return {
        "engine_type": settings.engine_type,
        "llm_model": settings.default_model,
        "max_tokens": settings.max_tokens,
        "permission_mode": settings.permission_mode,
    }


@router.get(
    "/health",
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint"
)
async def health_check(
    permissions: PermissionCoordinator = Depends(get_permissions),
) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "pending_permissions": len(permissions.pending_ids()),
    }
