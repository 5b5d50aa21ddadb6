from .chat import router as chat_router
from .permission import router as permission_router
from .sessions import router as sessions_router
from .info import router as info_router

__all__ = ["chat_router", "permission_router", "sessions_router", "info_router"]
