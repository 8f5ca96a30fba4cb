from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.event import Event


def log_event(
    db: Session,
    *,
    event_type: str,
    payload: dict[str, Any],
    deliberation_id: Optional[uuid.UUID] = None,
    actor_participant_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Event:
    """Append an event to the feed.

    Engine transitions pass ``commit=False`` so the event lands in the same
    transaction as the state change it describes.
    """
    event = Event(
        type=event_type,
        payload=payload,
        deliberation_id=deliberation_id,
        actor_participant_id=actor_participant_id,
        created_at=now or utcnow(),
    )
    db.add(event)
    if commit:
        db.commit()
        db.refresh(event)
    else:
        db.flush()
    return event
