"""Seat reservations for FCFS cells.

A reservation holds a seat for ``reservation_seconds``; casting a vote turns
it into a seat. Capacity is seats plus live reservations, checked under the
same cell version claim the vote ledger uses.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.core.errors import CellFull, Conflict, DeadlinePassed, EngineError, NotEligible
from app.models.cell import Cell, CellParticipant, Reservation
from app.models.deliberation import Deliberation
from app.models.enums import AllocationMode, CellStatus, Phase, SeatStatus
from app.models.idea import Idea
from app.models.participant import Participant
from app.services import evaluator, ledger, registry


logger = logging.getLogger(__name__)


def occupied_seats(db: Session, cell: Cell, now: datetime) -> int:
    seats = db.execute(
        select(func.count(CellParticipant.id)).where(CellParticipant.cell_id == cell.id)
    ).scalar() or 0
    held = db.execute(
        select(func.count(Reservation.id)).where(
            Reservation.cell_id == cell.id,
            Reservation.expires_at > now,
        )
    ).scalar() or 0
    return int(seats) + int(held)


def _holds_other_cell(db: Session, cell: Cell, participant_id: uuid.UUID, now: datetime) -> bool:
    siblings = select(Cell.id).where(
        Cell.deliberation_id == cell.deliberation_id,
        Cell.challenge_round == cell.challenge_round,
        Cell.tier == cell.tier,
        Cell.status == CellStatus.VOTING,
        Cell.id != cell.id,
    )
    seated = db.execute(
        select(CellParticipant.id).where(
            CellParticipant.participant_id == participant_id,
            CellParticipant.cell_id.in_(siblings),
        )
    ).first()
    if seated is not None:
        return True
    held = db.execute(
        select(Reservation.id).where(
            Reservation.participant_id == participant_id,
            Reservation.cell_id.in_(siblings),
            Reservation.expires_at > now,
        )
    ).first()
    return held is not None


def _authored_in_cell(db: Session, cell: Cell, participant_id: uuid.UUID) -> bool:
    return (
        db.execute(
            select(Idea.id).where(Idea.id.in_(cell.idea_ids), Idea.author_id == participant_id)
        ).first()
        is not None
    )


def ineligibility(
    db: Session,
    deliberation: Deliberation,
    cell: Cell,
    participant_id: uuid.UUID,
    now: datetime,
) -> Optional[EngineError]:
    """The error that keeps ``participant_id`` from reserving ``cell``, or None."""
    if cell.status != CellStatus.VOTING:
        return DeadlinePassed(cell.id, reason="Cell is no longer accepting votes")
    deadline = as_utc(cell.voting_deadline)
    if deadline is not None and now >= deadline:
        return DeadlinePassed(cell.id)
    if not registry.is_member(db, deliberation.id, participant_id):
        return NotEligible("Join the deliberation before taking a seat", cell_id=cell.id)
    if ledger.get_seat(db, cell.id, participant_id) is not None:
        return NotEligible("Already seated in this cell", cell_id=cell.id)
    if deliberation.allocation_mode == AllocationMode.BALANCED:
        return NotEligible("Seats in this deliberation are assigned", cell_id=cell.id)
    if ledger.in_human_window(cell, db.get(Participant, participant_id), now):
        return NotEligible("Final vote is reserved for human participants for now", cell_id=cell.id)
    if cell.is_final_vote:
        return None
    if _holds_other_cell(db, cell, participant_id, now):
        return NotEligible("Already holding a seat in another cell of this tier", cell_id=cell.id)
    if _authored_in_cell(db, cell, participant_id):
        return NotEligible("Cannot vote in a cell that contains your own idea", cell_id=cell.id)
    return None


def reserve_seat(
    db: Session,
    participant_id: uuid.UUID,
    cell_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Reservation:
    """Hold a seat in a cell; asking again while the hold is live returns it unchanged."""
    now = now or utcnow()
    settings = get_settings()
    cell = evaluator.get_cell(db, cell_id)
    deliberation = registry.get_deliberation(db, cell.deliberation_id)

    existing = ledger.live_reservation(db, cell.id, participant_id, now)
    if existing is not None:
        return existing

    error = ineligibility(db, deliberation, cell, participant_id, now)
    if error is not None:
        raise error
    if occupied_seats(db, cell, now) >= cell.votes_needed:
        raise CellFull(cell.id)

    claim = db.execute(
        update(Cell)
        .where(Cell.id == cell.id, Cell.version == cell.version, Cell.status == CellStatus.VOTING)
        .values(version=Cell.version + 1)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        db.rollback()
        raise Conflict("Cell changed while reserving; retry", cell_id=cell.id)

    try:
        # An expired hold by the same participant still occupies the unique slot.
        db.execute(
            delete(Reservation)
            .where(Reservation.cell_id == cell.id, Reservation.participant_id == participant_id)
            .execution_options(synchronize_session=False)
        )
        reservation = Reservation(
            cell_id=cell.id,
            participant_id=participant_id,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.reservation_seconds),
        )
        db.add(reservation)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Concurrent reservation detected; retry", cell_id=cell_id) from exc

    db.refresh(reservation)
    logger.info("participant %s reserved a seat in cell %s until %s", participant_id, cell.id, reservation.expires_at)
    return reservation


def sweep_expired_reservations(
    db: Session,
    now: Optional[datetime] = None,
    deliberation_id: Optional[uuid.UUID] = None,
) -> int:
    now = now or utcnow()
    stmt = delete(Reservation).where(Reservation.expires_at <= now)
    if deliberation_id is not None:
        stmt = stmt.where(
            Reservation.cell_id.in_(select(Cell.id).where(Cell.deliberation_id == deliberation_id))
        )
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.flush()
    if result.rowcount:
        logger.debug("swept %d expired reservation(s)", result.rowcount)
    return int(result.rowcount or 0)


def find_open_cell(
    db: Session,
    deliberation_id: uuid.UUID,
    participant_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[Cell]:
    """Pick the cell a participant should vote in next.

    A seat they already hold and have not used comes first, then an open
    final vote, then the eligible cell closest to full.
    """
    now = now or utcnow()
    deliberation = registry.get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.VOTING:
        return None

    cells = list(
        db.execute(
            select(Cell)
            .where(
                Cell.deliberation_id == deliberation.id,
                Cell.challenge_round == deliberation.challenge_round,
                Cell.status == CellStatus.VOTING,
            )
            .order_by(Cell.created_at.asc(), Cell.id.asc())
        ).scalars()
    )

    for cell in cells:
        seat = ledger.get_seat(db, cell.id, participant_id)
        if seat is not None and seat.status == SeatStatus.ACTIVE:
            return cell
        if ledger.live_reservation(db, cell.id, participant_id, now) is not None:
            return cell

    best: Optional[Cell] = None
    best_key: Optional[tuple[int, int]] = None
    for cell in cells:
        if ineligibility(db, deliberation, cell, participant_id, now) is not None:
            continue
        taken = occupied_seats(db, cell, now)
        if taken >= cell.votes_needed:
            continue
        key = (1 if cell.is_final_vote else 0, taken)
        if best_key is None or key > best_key:
            best, best_key = cell, key
    return best
