from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.security import (
    admin_key_matches,
    api_key_prefix,
    generate_api_key,
    hash_api_key,
    verify_api_key,
)
from app.db.session import SessionLocal
from app.models.participant import Participant
from app.schemas.participant import ParticipantRegisterRequest, ParticipantResponse


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_participant(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    db: Session = Depends(get_db),
) -> Participant:
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    # Only the hash is stored; the prefix narrows down which hashes to check.
    candidates = db.query(Participant).filter(Participant.api_key_prefix == api_key_prefix(x_api_key))
    for participant in candidates.all():
        if verify_api_key(x_api_key, participant.api_key_hash):
            return participant

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def require_admin(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    if not x_admin_key or not admin_key_matches(x_admin_key, get_settings().admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


@router.post("/register", response_model=ParticipantResponse)
def register_participant(payload: ParticipantRegisterRequest, db: Session = Depends(get_db)) -> ParticipantResponse:
    api_key = generate_api_key()
    now = datetime.now(timezone.utc)

    participant = Participant(
        display_name=payload.display_name,
        api_key_prefix=api_key_prefix(api_key),
        api_key_hash=hash_api_key(api_key),
        is_agent=payload.is_agent,
        created_at=now,
    )
    db.add(participant)
    db.commit()
    db.refresh(participant)

    return ParticipantResponse(
        participant_id=participant.id,
        display_name=participant.display_name,
        is_agent=participant.is_agent,
        api_key=api_key,
        created_at=participant.created_at,
    )


@router.get("/me")
def whoami(participant: Participant = Depends(get_current_participant)) -> dict:
    return {
        "participant_id": str(participant.id),
        "display_name": participant.display_name,
        "is_agent": participant.is_agent,
    }
