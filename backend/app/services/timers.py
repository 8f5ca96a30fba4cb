"""Scheduled wake-ups.

Nothing in the engine sleeps. Every piece of timed work is a due-at column
(``Reservation.expires_at``, ``Deliberation.submission_ends_at``,
``Cell.finalizes_at``, ``Cell.voting_deadline``, ``Tier.deadline``,
``Deliberation.accumulation_ends_at``) that :func:`process_due` polls. It is
driven by a cron hitting the admin endpoint and is also run inline when a vote
arrives after a deadline. Each step re-checks state before acting, so running
it twice, or from several instances, is harmless.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.models.cell import Cell, Vote
from app.models.deliberation import Deliberation, Tier
from app.models.enums import CLOSED_CELL_STATUSES, CellStatus, Phase, SeatStatus
from app.services import coordinator, evaluator, ledger, reservations


logger = logging.getLogger(__name__)


def _scoped(stmt, column, deliberation_id: Optional[uuid.UUID]):
    if deliberation_id is not None:
        stmt = stmt.where(column == deliberation_id)
    return stmt


def expire_submissions(db: Session, now: datetime, deliberation_id: Optional[uuid.UUID] = None) -> int:
    stmt = select(Deliberation.id).where(
        Deliberation.phase == Phase.SUBMISSION,
        Deliberation.submission_ends_at.is_not(None),
        Deliberation.submission_ends_at <= now,
    )
    started = 0
    for did in db.execute(_scoped(stmt, Deliberation.id, deliberation_id)).scalars().all():
        logger.info("deliberation %s: submission period over, starting voting", did)
        coordinator.start_voting(db, did, now)
        started += 1
    return started


def finalize_due_cells(db: Session, now: datetime, deliberation_id: Optional[uuid.UUID] = None) -> int:
    """Finalize cells whose grace window has elapsed."""
    stmt = select(Cell.id).where(
        Cell.status == CellStatus.VOTING,
        Cell.finalizes_at.is_not(None),
        Cell.finalizes_at <= now,
    )
    finalized = 0
    for cell_id in db.execute(_scoped(stmt, Cell.deliberation_id, deliberation_id)).scalars().all():
        if evaluator.finalize_cell(db, cell_id, now) is not None:
            finalized += 1
    return finalized


def must_vote_pending(db: Session, deliberation: Deliberation, cell: Cell) -> bool:
    """True while the deliberation's must-vote participant still owes a vote here."""
    participant_id = deliberation.must_vote_participant_id
    if participant_id is None:
        return False
    seat = ledger.get_seat(db, cell.id, participant_id)
    if seat is not None:
        return seat.status != SeatStatus.VOTED
    voted = db.execute(
        select(Vote.id)
        .join(Cell, Cell.id == Vote.cell_id)
        .where(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == cell.challenge_round,
            Cell.tier == cell.tier,
            Vote.participant_id == participant_id,
        )
    ).first()
    return voted is None


def _tier_of(db: Session, cell: Cell) -> Optional[Tier]:
    return db.execute(
        select(Tier).where(
            Tier.deliberation_id == cell.deliberation_id,
            Tier.challenge_round == cell.challenge_round,
            Tier.number == cell.tier,
        )
    ).scalar_one_or_none()


def enforce_deadlines(db: Session, now: datetime, deliberation_id: Optional[uuid.UUID] = None) -> dict[str, int]:
    """Force-evaluate open cells past their cell or tier deadline."""
    settings = get_settings()
    stmt = (
        select(Cell.id)
        .outerjoin(
            Tier,
            and_(
                Tier.deliberation_id == Cell.deliberation_id,
                Tier.challenge_round == Cell.challenge_round,
                Tier.number == Cell.tier,
            ),
        )
        .where(
            Cell.status == CellStatus.VOTING,
            or_(
                and_(Cell.voting_deadline.is_not(None), Cell.voting_deadline <= now),
                and_(Cell.voting_deadline.is_(None), Tier.deadline.is_not(None), Tier.deadline <= now),
            ),
        )
        .order_by(Cell.created_at.asc())
    )
    counts = {"forced": 0, "extended": 0}
    for cell_id in db.execute(_scoped(stmt, Cell.deliberation_id, deliberation_id)).scalars().all():
        cell = db.get(Cell, cell_id)
        if cell is None or cell.status != CellStatus.VOTING:
            continue
        deliberation = db.get(Deliberation, cell.deliberation_id)
        if not cell.deadline_extended and must_vote_pending(db, deliberation, cell):
            cell.voting_deadline = now + timedelta(seconds=settings.must_vote_extension_seconds)
            cell.deadline_extended = True
            tier_row = _tier_of(db, cell)
            if tier_row is not None:
                tier_row.extended = True
                tier_row.deadline = cell.voting_deadline
            db.commit()
            counts["extended"] += 1
            logger.warning(
                "cell %s: deadline extended %ss waiting on must-vote participant %s",
                cell.id,
                settings.must_vote_extension_seconds,
                deliberation.must_vote_participant_id,
            )
            continue
        if evaluator.finalize_cell(db, cell.id, now, forced=True, by_timeout=True) is not None:
            counts["forced"] += 1
    return counts


def supermajority_advance(db: Session, now: datetime, deliberation_id: Optional[uuid.UUID] = None) -> int:
    """Untimed deliberations: stop waiting on the last few cells of a tier."""
    settings = get_settings()
    stmt = select(Deliberation.id).where(
        Deliberation.phase == Phase.VOTING,
        Deliberation.supermajority_enabled.is_(True),
        Deliberation.voting_timeout_seconds == 0,
    )
    forced = 0
    for did in db.execute(_scoped(stmt, Deliberation.id, deliberation_id)).scalars().all():
        deliberation = db.get(Deliberation, did)
        cells = coordinator.tier_cells(db, deliberation, deliberation.current_tier)
        if len(cells) < 3:
            continue
        closed = [c for c in cells if c.status in CLOSED_CELL_STATUSES]
        still_open = [c for c in cells if c.status == CellStatus.VOTING]
        if not still_open or len(closed) / len(cells) < settings.supermajority_ratio:
            continue
        last_closed = max((as_utc(c.completed_at) for c in closed if c.completed_at is not None), default=None)
        if last_closed is None or now - last_closed < timedelta(seconds=settings.supermajority_grace_seconds):
            continue
        logger.warning(
            "deliberation %s: tier %s at %d/%d closed, forcing %d straggler(s)",
            deliberation.id,
            deliberation.current_tier,
            len(closed),
            len(cells),
            len(still_open),
        )
        for cell in still_open:
            if evaluator.finalize_cell(db, cell.id, now, forced=True, by_timeout=True) is not None:
                forced += 1
    return forced


def run_challenges(db: Session, now: datetime, deliberation_id: Optional[uuid.UUID] = None) -> int:
    """Start challenge rounds that are due by threshold or by the accumulation timeout."""
    stmt = select(Deliberation).where(Deliberation.phase == Phase.ACCUMULATING)
    started = 0
    for deliberation in db.execute(_scoped(stmt, Deliberation.id, deliberation_id)).scalars().all():
        ends_at = as_utc(deliberation.accumulation_ends_at)
        if ends_at is not None and ends_at <= now:
            result = coordinator.start_challenge_round(db, deliberation.id, now)
        else:
            result = coordinator.maybe_start_challenge(db, deliberation.id, now)
        if result is not None and not result.get("extended"):
            started += 1
    return started


def process_due(
    db: Session,
    now: Optional[datetime] = None,
    deliberation_id: Optional[uuid.UUID] = None,
) -> dict[str, Any]:
    """Run every kind of due work once, oldest obligations first."""
    now = now or utcnow()
    swept = reservations.sweep_expired_reservations(db, now, deliberation_id)
    db.commit()
    report: dict[str, Any] = {
        "reservations_expired": swept,
        "voting_started": expire_submissions(db, now, deliberation_id),
        "cells_finalized": finalize_due_cells(db, now, deliberation_id),
    }
    deadlines = enforce_deadlines(db, now, deliberation_id)
    report["cells_forced"] = deadlines["forced"]
    report["deadlines_extended"] = deadlines["extended"]
    report["supermajority_forced"] = supermajority_advance(db, now, deliberation_id)
    report["challenge_rounds_started"] = run_challenges(db, now, deliberation_id)
    if any(report.values()):
        logger.info("timers: %s", report)
    return report
