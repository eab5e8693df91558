from .admin import build_admin_router
from .health import build_health_router
from .webhooks import build_webhook_router

__all__ = ["build_admin_router", "build_health_router", "build_webhook_router"]
