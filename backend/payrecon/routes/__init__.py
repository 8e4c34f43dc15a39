from payrecon.routes.payments import router as payments_router
from payrecon.routes.orders import router as orders_router
from payrecon.routes.webhooks import router as webhooks_router
from payrecon.routes.admin import router as admin_router

__all__ = ["payments_router", "orders_router", "webhooks_router", "admin_router"]
