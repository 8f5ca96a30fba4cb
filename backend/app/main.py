import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.errors import EngineError
from app.api import api_router


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cellvote API", version="0.1.0")

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


@app.get("/")
def root(request: Request) -> dict:
    """Discovery: clients start here to find the skill description and health."""
    return {
        "name": "Cellvote",
        "status": "online",
        "skill_endpoint": "/skill",
        "health": "/health",
    }


@app.get("/skill")
def skill(request: Request) -> dict:
    """Machine-readable description of the API. No auth required."""
    base = _base_url(request)
    return {
        "name": "Cellvote",
        "description": "Tiered small-group deliberation: ideas compete in cells of 3-7, winners advance tier by tier.",
        "authentication": {
            "type": "api_key",
            "header": "X-API-Key",
            "registration_endpoint": "/v1/participants/register",
        },
        "base_url": base,
        "capabilities": [
            {
                "name": "register",
                "method": "POST",
                "path": "/v1/participants/register",
                "auth_required": False,
                "body_schema": {"display_name": "string", "is_agent": "boolean"},
            },
            {
                "name": "create_deliberation",
                "method": "POST",
                "path": "/v1/deliberations",
                "auth_required": True,
                "body_schema": {"question": "string", "allocation_mode": "FCFS | BALANCED"},
            },
            {
                "name": "join",
                "method": "POST",
                "path": "/v1/deliberations/{id}/join",
                "auth_required": True,
            },
            {
                "name": "submit_idea",
                "method": "POST",
                "path": "/v1/deliberations/{id}/ideas",
                "auth_required": True,
                "body_schema": {"text": "string (1-2000 chars)"},
            },
            {
                "name": "start_voting",
                "method": "POST",
                "path": "/v1/deliberations/{id}/start",
                "auth_required": True,
                "description": "Creator only.",
            },
            {
                "name": "find_open_cell",
                "method": "GET",
                "path": "/v1/deliberations/{id}/open-cell",
                "auth_required": True,
            },
            {
                "name": "reserve_seat",
                "method": "POST",
                "path": "/v1/cells/{id}/reserve",
                "auth_required": True,
            },
            {
                "name": "vote",
                "method": "POST",
                "path": "/v1/cells/{id}/vote",
                "auth_required": True,
                "body_schema": {"allocations": [{"idea_id": "uuid", "points": "int"}]},
            },
            {
                "name": "comment",
                "method": "POST",
                "path": "/v1/cells/{id}/comments",
                "auth_required": True,
                "body_schema": {"text": "string", "idea_id": "uuid (optional)"},
            },
            {
                "name": "upvote_comment",
                "method": "POST",
                "path": "/v1/comments/{id}/upvote",
                "auth_required": True,
            },
            {
                "name": "events",
                "method": "GET",
                "path": "/v1/events",
                "auth_required": False,
                "query": "cursor, limit, deliberation_id, type",
            },
        ],
        "rules": [
            f"Points ballots spend exactly {settings.points_per_vote} points, at least 1 per chosen idea.",
            "Plurality ballots name exactly one idea.",
            "A vote can be replaced until the cell finalizes.",
            f"A reserved seat is held for {settings.reservation_seconds} seconds.",
            "Errors carry a stable code; retryable ones can be sent again unchanged.",
        ],
    }


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(api_router)
