import uuid
from typing import Any, List

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.api.v1.participants import get_current_participant, get_db
from app.models.cell import Cell, CellParticipant
from app.models.enums import CLOSED_CELL_STATUSES, SeatStatus
from app.models.participant import Participant
from app.schemas.cell import (
    CommentCreateRequest,
    CommentItem,
    ReservationResponse,
    VoteRequest,
    VoteResponse,
)
from app.services import evaluator, ledger, pollination, reservations


router = APIRouter()


def _iso(value) -> Any:
    return value.isoformat() if value else None


def cell_view(db: Session, cell: Cell) -> dict[str, Any]:
    """Cell projection. Per-idea totals stay hidden until the cell has closed."""
    closed = cell.status in CLOSED_CELL_STATUSES
    voted = db.execute(
        select(func.count(CellParticipant.id)).where(
            CellParticipant.cell_id == cell.id,
            CellParticipant.status == SeatStatus.VOTED,
        )
    ).scalar() or 0
    ideas = []
    for ci in cell.ideas:
        item: dict[str, Any] = {"idea_id": str(ci.idea_id)}
        if closed:
            item.update(
                total_points=ci.total_points,
                total_voters=ci.total_voters,
                outcome=ci.outcome.value if ci.outcome else None,
            )
        ideas.append(item)
    return {
        "id": str(cell.id),
        "deliberation_id": str(cell.deliberation_id),
        "challenge_round": cell.challenge_round,
        "tier": cell.tier,
        "status": cell.status.value,
        "is_final_vote": cell.is_final_vote,
        "votes_needed": cell.votes_needed,
        "voters": int(voted),
        "seats": len(cell.seats),
        "ideas": ideas,
        "voting_deadline": _iso(cell.voting_deadline),
        "finalizes_at": _iso(cell.finalizes_at),
        "reserved_for_humans_until": _iso(cell.reserved_for_humans_until),
        "completed_at": _iso(cell.completed_at),
        "completed_by_timeout": cell.completed_by_timeout,
    }


@router.get("/{cell_id}")
def get_cell(cell_id: uuid.UUID, db: Session = Depends(get_db)) -> dict[str, Any]:
    return cell_view(db, evaluator.get_cell(db, cell_id))


@router.post("/{cell_id}/reserve", response_model=ReservationResponse)
def reserve(
    cell_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> ReservationResponse:
    reservation = reservations.reserve_seat(db, participant.id, cell_id)
    return ReservationResponse.model_validate(reservation)


@router.post("/{cell_id}/vote", response_model=VoteResponse)
def vote(
    cell_id: uuid.UUID,
    payload: VoteRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> VoteResponse:
    receipt = ledger.cast_vote(
        db,
        participant.id,
        cell_id,
        [(item.idea_id, item.points) for item in payload.allocations],
    )
    return VoteResponse(
        accepted=receipt.accepted,
        cell_now_complete=receipt.cell_now_complete,
        voter_count=receipt.voter_count,
        votes_needed=receipt.votes_needed,
        finalizes_at=receipt.finalizes_at,
    )


@router.get("/{cell_id}/my-vote")
def my_vote(
    cell_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> dict[str, Any]:
    allocation = ledger.participant_allocation(db, cell_id, participant.id)
    return {
        "cell_id": str(cell_id),
        "allocations": [{"idea_id": str(idea_id), "points": points} for idea_id, points in allocation.items()],
    }


@router.post("/{cell_id}/comments", response_model=CommentItem)
def add_comment(
    cell_id: uuid.UUID,
    payload: CommentCreateRequest,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> CommentItem:
    comment = pollination.add_comment(db, participant.id, cell_id, payload.text, idea_id=payload.idea_id)
    item = CommentItem.model_validate(comment)
    item.source = "own"
    return item


@router.get("/{cell_id}/comments", response_model=List[CommentItem])
def list_comments(cell_id: uuid.UUID, db: Session = Depends(get_db)) -> List[CommentItem]:
    items = []
    for visible in pollination.visible_comments(db, cell_id):
        item = CommentItem.model_validate(visible.comment)
        item.source = visible.source
        items.append(item)
    return items
