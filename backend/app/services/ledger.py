"""Vote ledger.

A participant's allocation in a cell is replaced as a whole, never appended
to. The write, the per-idea recount and the quorum check share one
transaction that starts by bumping the cell version; losing that race raises
a retryable Conflict with nothing applied.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.core.errors import (
    AllocationError,
    Conflict,
    DeadlinePassed,
    DuplicateIdea,
    EmptyAllocation,
    IdeaNotInCell,
    InvalidAllocationSum,
    InvalidPoints,
    NotAParticipant,
    NotEligible,
)
from app.models.cell import Cell, CellParticipant, Reservation, Vote
from app.models.deliberation import Deliberation
from app.models.enums import CellStatus, SeatStatus, VotingMode
from app.models.idea import Idea
from app.models.participant import Participant
from app.services import evaluator
from app.services.events import log_event


logger = logging.getLogger(__name__)


@dataclass
class VoteReceipt:
    accepted: bool
    cell_now_complete: bool
    voter_count: int
    votes_needed: int
    finalizes_at: Optional[datetime] = None


def _pairs(allocations: Iterable[Any]) -> list[tuple[Any, Any]]:
    pairs = []
    for entry in allocations:
        if isinstance(entry, dict):
            pairs.append((entry.get("idea_id"), entry.get("points")))
        elif isinstance(entry, (tuple, list)):
            idea_id, points = entry
            pairs.append((idea_id, points))
        else:
            pairs.append((entry.idea_id, entry.points))
    return pairs


def _as_uuid(value: Any, cell_id: uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise IdeaNotInCell(value, cell_id) from exc


def validate_allocations(cell: Cell, allocations: Iterable[Any], voting_mode: VotingMode) -> dict[uuid.UUID, int]:
    """Check an allocation against the cell; returns ``{idea_id: points}`` ready to store."""
    settings = get_settings()
    pairs = _pairs(allocations)
    if not pairs:
        raise EmptyAllocation()

    in_cell = set(cell.idea_ids)
    checked: dict[uuid.UUID, int] = {}
    for raw_id, points in pairs:
        idea_id = _as_uuid(raw_id, cell.id)
        if idea_id not in in_cell:
            raise IdeaNotInCell(idea_id, cell.id)
        if idea_id in checked:
            raise DuplicateIdea(idea_id)
        if voting_mode == VotingMode.PLURALITY:
            checked[idea_id] = 1
            continue
        if isinstance(points, bool) or not isinstance(points, int) or points < 1:
            raise InvalidPoints(idea_id, points)
        checked[idea_id] = points

    if voting_mode == VotingMode.PLURALITY:
        if len(checked) != 1:
            raise AllocationError("Plurality voting takes exactly one idea", count=len(checked))
        return checked

    total = sum(checked.values())
    if total != settings.points_per_vote:
        raise InvalidAllocationSum(total, settings.points_per_vote)
    return checked


def live_reservation(
    db: Session,
    cell_id: uuid.UUID,
    participant_id: uuid.UUID,
    now: datetime,
) -> Optional[Reservation]:
    return db.execute(
        select(Reservation).where(
            Reservation.cell_id == cell_id,
            Reservation.participant_id == participant_id,
            Reservation.expires_at > now,
        )
    ).scalar_one_or_none()


def get_seat(db: Session, cell_id: uuid.UUID, participant_id: uuid.UUID) -> Optional[CellParticipant]:
    return db.execute(
        select(CellParticipant).where(
            CellParticipant.cell_id == cell_id,
            CellParticipant.participant_id == participant_id,
        )
    ).scalar_one_or_none()


def in_human_window(cell: Cell, participant: Optional[Participant], now: datetime) -> bool:
    if not cell.is_final_vote or participant is None or not participant.is_agent:
        return False
    until = as_utc(cell.reserved_for_humans_until)
    return until is not None and now < until


def quorum_count(db: Session, cell: Cell) -> int:
    """Distinct voters, or distinct voter groups when the cell counts groups."""
    if cell.group_quorum:
        return int(
            db.execute(
                select(func.count(func.distinct(CellParticipant.group_key))).where(
                    CellParticipant.cell_id == cell.id,
                    CellParticipant.status == SeatStatus.VOTED,
                )
            ).scalar()
            or 0
        )
    return evaluator.voter_count(db, cell.id)


def _recount(db: Session, cell: Cell) -> None:
    tallies = evaluator.tally_cell(db, cell)
    for ci in cell.ideas:
        tally = tallies[ci.idea_id]
        ci.total_points = tally.points
        ci.total_voters = tally.voters

    lifetime = db.execute(
        select(
            Vote.idea_id,
            func.coalesce(func.sum(Vote.points), 0),
            func.count(Vote.id),
        )
        .where(Vote.idea_id.in_(cell.idea_ids))
        .group_by(Vote.idea_id)
    ).all()
    totals = {idea_id: (int(points), int(voters)) for idea_id, points, voters in lifetime}
    for idea in db.execute(select(Idea).where(Idea.id.in_(cell.idea_ids))).scalars():
        idea.total_points, idea.total_voters = totals.get(idea.id, (0, 0))


def cast_vote(
    db: Session,
    participant_id: uuid.UUID,
    cell_id: uuid.UUID,
    allocations: Iterable[Any],
    now: Optional[datetime] = None,
) -> VoteReceipt:
    """Record (or replace) a participant's allocation in a cell.

    Raises NotAParticipant, NotEligible, DeadlinePassed, the AllocationError
    family, or Conflict. A passed deadline first runs the due-work sweep for
    the deliberation, so the stalled cell gets evaluated instead of waiting.
    """
    now = now or utcnow()
    settings = get_settings()
    cell = evaluator.get_cell(db, cell_id)
    deliberation = db.get(Deliberation, cell.deliberation_id)

    seat = get_seat(db, cell.id, participant_id)
    reservation = None if seat is not None else live_reservation(db, cell.id, participant_id, now)
    if seat is None and reservation is None:
        raise NotAParticipant(participant_id, cell.id)
    if in_human_window(cell, db.get(Participant, participant_id), now):
        raise NotEligible("Final vote is reserved for human participants for now", cell_id=cell.id)

    if cell.status != CellStatus.VOTING:
        raise DeadlinePassed(cell.id, reason="Cell is no longer accepting votes")
    deadline = as_utc(cell.voting_deadline)
    if deadline is not None and now >= deadline:
        from app.services import timers

        timers.process_due(db, now, deliberation_id=cell.deliberation_id)
        db.refresh(cell)
        deadline = as_utc(cell.voting_deadline)
        # A must-vote extension reopens the cell; anything else is closed now.
        if cell.status != CellStatus.VOTING or (deadline is not None and now >= deadline):
            raise DeadlinePassed(cell.id)

    checked = validate_allocations(cell, allocations, deliberation.voting_mode)

    seen = cell.version
    claim = db.execute(
        update(Cell)
        .where(Cell.id == cell.id, Cell.version == seen, Cell.status == CellStatus.VOTING)
        .values(version=Cell.version + 1)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        db.rollback()
        raise Conflict("Cell changed while the vote was being written; retry", cell_id=cell.id)

    try:
        db.execute(
            delete(Vote)
            .where(Vote.cell_id == cell.id, Vote.participant_id == participant_id)
            .execution_options(synchronize_session=False)
        )
        for idea_id, points in checked.items():
            db.add(Vote(cell_id=cell.id, participant_id=participant_id, idea_id=idea_id, points=points, voted_at=now))

        if seat is None:
            db.delete(reservation)
            seat = CellParticipant(cell_id=cell.id, participant_id=participant_id, joined_at=now)
            db.add(seat)
        seat.status = SeatStatus.VOTED
        seat.voted_at = now
        db.flush()

        db.refresh(cell)
        _recount(db, cell)
        count = quorum_count(db, cell)
        if count >= cell.votes_needed and cell.finalizes_at is None:
            cell.finalizes_at = now + timedelta(seconds=settings.grace_period_seconds)
            logger.info("cell %s reached quorum (%d/%d); finalizes at %s", cell.id, count, cell.votes_needed, cell.finalizes_at)

        log_event(
            db,
            event_type="vote_cast",
            payload={
                "cell_id": str(cell.id),
                "tier": cell.tier,
                "voters": count,
                "votes_needed": cell.votes_needed,
            },
            deliberation_id=cell.deliberation_id,
            actor_participant_id=participant_id,
            now=now,
            commit=False,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Concurrent vote detected; retry", cell_id=cell_id) from exc

    finalizes_at = as_utc(cell.finalizes_at)
    complete = False
    if finalizes_at is not None and finalizes_at <= now:
        complete = evaluator.finalize_cell(db, cell.id, now) is not None

    return VoteReceipt(
        accepted=True,
        cell_now_complete=complete,
        voter_count=count,
        votes_needed=cell.votes_needed,
        finalizes_at=finalizes_at,
    )


def participant_allocation(db: Session, cell_id: uuid.UUID, participant_id: uuid.UUID) -> dict[uuid.UUID, int]:
    rows = db.execute(
        select(Vote.idea_id, Vote.points).where(Vote.cell_id == cell_id, Vote.participant_id == participant_id)
    ).all()
    return {idea_id: points for idea_id, points in rows}
