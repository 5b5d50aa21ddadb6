from fastapi import Request

from chat.permissions import PermissionCoordinator
from chat.relay import StreamRelay
from chat.session import SessionStore
from config import Settings


# Shared services live on app.state, built once in create_app


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_permissions(request: Request) -> PermissionCoordinator:
    return request.app.state.permissions
