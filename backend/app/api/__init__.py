from .auth import router as auth_router
from .users import router as users_router
from .emails import router as emails_router
from .labels import router as labels_router
from .templates import router as templates_router
from .analytics import router as analytics_router
from .ws import router as ws_router

__all__ = [
    "auth_router",
    "users_router",
    "emails_router",
    "labels_router",
    "templates_router",
    "analytics_router",
    "ws_router"
]
