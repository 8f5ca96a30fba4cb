import base64
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.api.v1.participants import get_db
from app.models.event import Event
from app.schemas.event import EventItem, EventsPage


router = APIRouter()


def _encode_cursor(created_at: datetime, event_id: uuid.UUID) -> str:
    raw = f"{created_at.isoformat()}|{event_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("utf-8")


def _decode_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        created_str, id_str = raw.split("|", 1)
        return datetime.fromisoformat(created_str), uuid.UUID(id_str)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid cursor",
        ) from exc


@router.get("", response_model=EventsPage)
def list_events(
    cursor: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    deliberation_id: Optional[uuid.UUID] = Query(default=None),
    event_type: Optional[str] = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
) -> EventsPage:
    """Oldest-first engine feed, optionally narrowed to one deliberation or one event type."""
    query = db.query(Event)
    if deliberation_id is not None:
        query = query.filter(Event.deliberation_id == deliberation_id)
    if event_type:
        query = query.filter(Event.type == event_type)

    if cursor:
        created_at_cursor, event_id_cursor = _decode_cursor(cursor)
        query = query.filter(
            or_(
                Event.created_at > created_at_cursor,
                and_(
                    Event.created_at == created_at_cursor,
                    Event.id > event_id_cursor,
                ),
            )
        )

    query = query.order_by(Event.created_at.asc(), Event.id.asc())

    rows = query.limit(limit + 1).all()

    items = [EventItem.model_validate(row) for row in rows[:limit]]
    next_cursor: Optional[str] = None

    if len(rows) > limit:
        last = rows[limit - 1]
        next_cursor = _encode_cursor(last.created_at, last.id)

    return EventsPage(items=items, next_cursor=next_cursor)
