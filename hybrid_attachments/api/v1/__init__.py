from fastapi import APIRouter
from hybrid_attachments.api.v1 import attachments, outbox, metrics

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(attachments.router, prefix="/attachments", tags=["attachments"])
api_router.include_router(outbox.router, prefix="/outbox", tags=["outbox"])
api_router.include_router(metrics.router, tags=["monitoring"])
