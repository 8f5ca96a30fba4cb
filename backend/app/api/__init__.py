from fastapi import APIRouter

from app.api.v1 import admin as admin_router
from app.api.v1 import cells as cells_router
from app.api.v1 import comments as comments_router
from app.api.v1 import deliberations as deliberations_router
from app.api.v1 import events as events_router
from app.api.v1 import participants as participants_router


api_router = APIRouter()

api_router.include_router(participants_router.router, prefix="/v1/participants", tags=["participants"])
api_router.include_router(deliberations_router.router, prefix="/v1/deliberations", tags=["deliberations"])
api_router.include_router(cells_router.router, prefix="/v1/cells", tags=["cells"])
api_router.include_router(comments_router.router, prefix="/v1/comments", tags=["comments"])
api_router.include_router(events_router.router, prefix="/v1/events", tags=["events"])
api_router.include_router(admin_router.router, prefix="/v1/admin", tags=["admin"])
