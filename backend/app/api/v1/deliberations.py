import uuid
from collections import Counter
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.v1.cells import cell_view
from app.api.v1.participants import get_current_participant, get_db
from app.core.errors import NotEligible
from app.models.cell import Cell
from app.models.deliberation import Deliberation, Tier
from app.models.enums import CLOSED_CELL_STATUSES, IdeaStatus
from app.models.idea import Idea
from app.models.participant import Participant
from app.schemas.deliberation import DeliberationCreateRequest, IdeaSubmitRequest
from app.services import coordinator, registry, reservations


router = APIRouter()


def _iso(value) -> Any:
    return value.isoformat() if value else None


def idea_view(idea: Idea) -> dict[str, Any]:
    # Running totals would leak how an open cell is voting.
    hidden = idea.status == IdeaStatus.IN_VOTING
    return {
        "id": str(idea.id),
        "deliberation_id": str(idea.deliberation_id),
        "author_id": str(idea.author_id),
        "text": idea.text,
        "status": idea.status.value,
        "tier": idea.tier,
        "times_presented": idea.times_presented,
        "losses": idea.losses,
        "total_points": None if hidden else idea.total_points,
        "total_voters": None if hidden else idea.total_voters,
        "created_at": _iso(idea.created_at),
    }


def deliberation_view(db: Session, deliberation: Deliberation) -> dict[str, Any]:
    statuses = Counter(
        status.value
        for status in db.execute(select(Idea.status).where(Idea.deliberation_id == deliberation.id)).scalars()
    )
    tiers = []
    for tier in db.execute(
        select(Tier)
        .where(Tier.deliberation_id == deliberation.id)
        .order_by(Tier.challenge_round.asc(), Tier.number.asc())
    ).scalars():
        cells = db.execute(
            select(Cell.status).where(
                Cell.deliberation_id == deliberation.id,
                Cell.challenge_round == tier.challenge_round,
                Cell.tier == tier.number,
            )
        ).scalars().all()
        tiers.append(
            {
                "challenge_round": tier.challenge_round,
                "number": tier.number,
                "status": tier.status.value,
                "deadline": _iso(tier.deadline),
                "extended": tier.extended,
                "cells": len(cells),
                "cells_closed": sum(1 for status in cells if status in CLOSED_CELL_STATUSES),
            }
        )
    return {
        "id": str(deliberation.id),
        "question": deliberation.question,
        "creator_id": str(deliberation.creator_id),
        "phase": deliberation.phase.value,
        "current_tier": deliberation.current_tier,
        "challenge_round": deliberation.challenge_round,
        "allocation_mode": deliberation.allocation_mode.value,
        "voting_mode": deliberation.voting_mode.value,
        "advancement_policy": deliberation.advancement_policy.value,
        "accumulation_enabled": deliberation.accumulation_enabled,
        "champion_id": str(deliberation.champion_id) if deliberation.champion_id else None,
        "champion_entered_tier": deliberation.champion_entered_tier,
        "submission_ends_at": _iso(deliberation.submission_ends_at),
        "accumulation_ends_at": _iso(deliberation.accumulation_ends_at),
        "completed_at": _iso(deliberation.completed_at),
        "members": len(registry.member_ids(db, deliberation.id)),
        "ideas": dict(statuses),
        "tiers": tiers,
    }


def _require_creator(deliberation: Deliberation, participant: Participant) -> None:
    if deliberation.creator_id != participant.id:
        raise NotEligible("Only the creator can do this", deliberation_id=deliberation.id)


@router.post("")
def create_deliberation(
    payload: DeliberationCreateRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    deliberation = registry.create_deliberation(
        db,
        creator_id=participant.id,
        question=payload.question,
        **payload.engine_options(),
    )
    return deliberation_view(db, deliberation)


@router.get("/{deliberation_id}")
def get_deliberation(deliberation_id: uuid.UUID, db: Session = Depends(get_db)) -> dict[str, Any]:
    return deliberation_view(db, registry.get_deliberation(db, deliberation_id))


@router.post("/{deliberation_id}/join")
def join(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    member = registry.join_deliberation(db, deliberation_id, participant.id)
    return {
        "deliberation_id": str(deliberation_id),
        "participant_id": str(participant.id),
        "joined_at": _iso(member.joined_at),
    }


@router.post("/{deliberation_id}/ideas")
def submit_idea(
    deliberation_id: uuid.UUID,
    payload: IdeaSubmitRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    idea = registry.submit_idea(db, deliberation_id, participant.id, payload.text)
    return idea_view(idea)


@router.get("/{deliberation_id}/ideas")
def list_ideas(
    deliberation_id: uuid.UUID,
    status: Optional[IdeaStatus] = Query(default=None),
    db: Session = Depends(get_db),
) -> List[dict[str, Any]]:
    registry.get_deliberation(db, deliberation_id)
    statuses = (status,) if status else None
    return [idea_view(idea) for idea in registry.list_ideas(db, deliberation_id, statuses=statuses)]


@router.post("/{deliberation_id}/start")
def start_voting(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    _require_creator(registry.get_deliberation(db, deliberation_id), participant)
    result = coordinator.start_voting(db, deliberation_id)
    return {"result": result, "deliberation": deliberation_view(db, registry.get_deliberation(db, deliberation_id))}


@router.post("/{deliberation_id}/challenge")
def start_challenge(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    _require_creator(registry.get_deliberation(db, deliberation_id), participant)
    result = coordinator.start_challenge_round(db, deliberation_id)
    return {"result": result, "deliberation": deliberation_view(db, registry.get_deliberation(db, deliberation_id))}


@router.post("/{deliberation_id}/close")
def close(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    _require_creator(registry.get_deliberation(db, deliberation_id), participant)
    deliberation = coordinator.close_deliberation(db, deliberation_id)
    return deliberation_view(db, deliberation)


@router.get("/{deliberation_id}/open-cell")
def open_cell(
    deliberation_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    cell = reservations.find_open_cell(db, deliberation_id, participant.id)
    return {"cell": cell_view(db, cell) if cell is not None else None}
