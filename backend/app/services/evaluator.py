"""Cell completion evaluator.

Finalization is claimed with a conditional UPDATE on the cell status, so of
any number of concurrent finalize calls exactly one applies the outcome and
the rest are no-ops.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.core.errors import CellNotFound
from app.models.cell import Cell, Vote
from app.models.enums import CellOutcome, CellStatus, IdeaStatus
from app.models.idea import Idea
from app.services import registry
from app.services.events import log_event


logger = logging.getLogger(__name__)


@dataclass
class IdeaTally:
    points: int = 0
    voters: int = 0


@dataclass
class CellResult:
    cell_id: uuid.UUID
    status: CellStatus
    winner_ids: list[uuid.UUID] = field(default_factory=list)
    recycled_ids: list[uuid.UUID] = field(default_factory=list)
    eliminated_ids: list[uuid.UUID] = field(default_factory=list)
    voter_count: int = 0
    forced: bool = False


def get_cell(db: Session, cell_id: uuid.UUID) -> Cell:
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise CellNotFound(cell_id)
    return cell


def tally_cell(db: Session, cell: Cell) -> dict[uuid.UUID, IdeaTally]:
    """Per-idea points and distinct voters, read straight from the vote rows."""
    tallies = {ci.idea_id: IdeaTally() for ci in cell.ideas}
    rows = db.execute(
        select(Vote.idea_id, func.sum(Vote.points), func.count(func.distinct(Vote.participant_id)))
        .where(Vote.cell_id == cell.id)
        .group_by(Vote.idea_id)
    ).all()
    for idea_id, points, voters in rows:
        tallies[idea_id] = IdeaTally(points=int(points or 0), voters=int(voters or 0))
    return tallies


def voter_count(db: Session, cell_id: uuid.UUID) -> int:
    return int(
        db.execute(select(func.count(func.distinct(Vote.participant_id))).where(Vote.cell_id == cell_id)).scalar()
        or 0
    )


def winner_ids(tallies: dict[uuid.UUID, IdeaTally]) -> list[uuid.UUID]:
    """Every idea holding the top total advances."""
    if not tallies:
        return []
    top = max(t.points for t in tallies.values())
    return sorted((idea_id for idea_id, t in tallies.items() if t.points == top), key=str)


def _claim(db: Session, cell: Cell, status: CellStatus, now: datetime, by_timeout: bool) -> bool:
    result = db.execute(
        update(Cell)
        .where(Cell.id == cell.id, Cell.status == CellStatus.VOTING)
        .values(status=status, completed_at=now, completed_by_timeout=by_timeout)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.refresh(cell)
    return True


def _store_tallies(cell: Cell, tallies: dict[uuid.UUID, IdeaTally]) -> None:
    for ci in cell.ideas:
        tally = tallies.get(ci.idea_id, IdeaTally())
        ci.total_points = tally.points
        ci.total_voters = tally.voters


def _ideas_of(db: Session, cell: Cell) -> dict[uuid.UUID, Idea]:
    ids = cell.idea_ids
    return {idea.id: idea for idea in db.execute(select(Idea).where(Idea.id.in_(ids))).scalars()}


def _abandon(cell: Cell, ideas: dict[uuid.UUID, Idea], voters: int) -> CellResult:
    result = CellResult(cell_id=cell.id, status=CellStatus.ABANDONED, voter_count=voters, forced=True)
    for ci in cell.ideas:
        registry.move_idea(ideas[ci.idea_id], IdeaStatus.ELIMINATED)
        ci.outcome = CellOutcome.ELIMINATED
        result.eliminated_ids.append(ci.idea_id)
    logger.warning("cell %s abandoned with %d voter(s); %d idea(s) eliminated", cell.id, voters, len(cell.ideas))
    return result


def _settle_final(cell: Cell, ideas: dict[uuid.UUID, Idea], tallies: dict[uuid.UUID, IdeaTally], result: CellResult) -> None:
    # Ties fall back to lifetime points, then to the earliest submission.
    ranked = sorted(
        cell.ideas,
        key=lambda ci: (
            -tallies[ci.idea_id].points,
            -ideas[ci.idea_id].total_points,
            as_utc(ideas[ci.idea_id].created_at),
            str(ci.idea_id),
        ),
    )
    for position, ci in enumerate(ranked):
        idea = ideas[ci.idea_id]
        if position == 0:
            registry.move_idea(idea, IdeaStatus.WINNER)
            ci.outcome = CellOutcome.WON
            result.winner_ids.append(idea.id)
        else:
            registry.move_idea(idea, IdeaStatus.ELIMINATED)
            idea.losses += 1
            ci.outcome = CellOutcome.ELIMINATED
            result.eliminated_ids.append(idea.id)


def _settle_regular(cell: Cell, ideas: dict[uuid.UUID, Idea], tallies: dict[uuid.UUID, IdeaTally], result: CellResult) -> None:
    settings = get_settings()
    winners = set(winner_ids(tallies))
    for ci in cell.ideas:
        idea = ideas[ci.idea_id]
        if idea.id in winners:
            registry.move_idea(idea, IdeaStatus.ADVANCING, tier=cell.tier + 1)
            ci.outcome = CellOutcome.WON
            result.winner_ids.append(idea.id)
            continue

        idea.losses += 1
        if tallies[idea.id].points >= settings.recycle_floor and idea.times_presented < settings.retry_cap:
            registry.move_idea(idea, IdeaStatus.RECYCLED)
            ci.outcome = CellOutcome.RECYCLED
            result.recycled_ids.append(idea.id)
        else:
            registry.move_idea(idea, IdeaStatus.ELIMINATED)
            ci.outcome = CellOutcome.ELIMINATED
            result.eliminated_ids.append(idea.id)


def _cell_completed_event(db: Session, cell: Cell, result: CellResult, now: datetime) -> None:
    log_event(
        db,
        event_type="cell_completed",
        payload={
            "cell_id": str(cell.id),
            "tier": cell.tier,
            "challenge_round": cell.challenge_round,
            "status": result.status.value,
            "final_vote": cell.is_final_vote,
            "forced": result.forced,
            "voters": result.voter_count,
            "winners": [str(i) for i in result.winner_ids],
            "recycled": [str(i) for i in result.recycled_ids],
            "eliminated": [str(i) for i in result.eliminated_ids],
        },
        deliberation_id=cell.deliberation_id,
        now=now,
        commit=False,
    )


def finalize_cell(
    db: Session,
    cell_id: uuid.UUID,
    now: Optional[datetime] = None,
    *,
    forced: bool = False,
    by_timeout: bool = False,
    advance: bool = True,
) -> Optional[CellResult]:
    """Close a cell and apply its outcome. Returns None when there was nothing to do.

    Without ``forced`` the cell must have reached quorum and its grace window
    must have elapsed. Forced evaluation of a cell below the vote floor
    abandons it. With ``advance`` the tier coordinator runs afterwards.
    """
    now = now or utcnow()
    settings = get_settings()
    cell = get_cell(db, cell_id)
    if cell.status != CellStatus.VOTING:
        return None
    if not forced:
        due = as_utc(cell.finalizes_at)
        if due is None or due > now:
            return None

    voters = voter_count(db, cell.id)
    abandon = forced and voters < settings.min_force_votes
    target = CellStatus.ABANDONED if abandon else CellStatus.COMPLETED
    if not _claim(db, cell, target, now, by_timeout):
        db.rollback()
        logger.debug("cell %s finalize lost the claim", cell_id)
        return None

    ideas = _ideas_of(db, cell)
    tallies = tally_cell(db, cell)
    _store_tallies(cell, tallies)
    if abandon:
        result = _abandon(cell, ideas, voters)
    else:
        result = CellResult(cell_id=cell.id, status=CellStatus.COMPLETED, voter_count=voters, forced=forced)
        if cell.is_final_vote:
            _settle_final(cell, ideas, tallies, result)
        else:
            _settle_regular(cell, ideas, tallies, result)
        logger.info(
            "cell %s completed (tier %s, %d voter(s)): winners=%s",
            cell.id,
            cell.tier,
            voters,
            [str(i) for i in result.winner_ids],
        )

    _cell_completed_event(db, cell, result, now)
    db.commit()

    if advance:
        from app.services import coordinator

        coordinator.on_cell_closed(db, cell.id, now)
    return result


def default_advance_cell(db: Session, cell: Cell, now: Optional[datetime] = None) -> Optional[CellResult]:
    """Complete a cell that has nobody to vote in it; every idea advances unopposed."""
    now = now or utcnow()
    if not _claim(db, cell, CellStatus.COMPLETED, now, False):
        return None
    result = CellResult(cell_id=cell.id, status=CellStatus.COMPLETED)
    for idea in _ideas_of(db, cell).values():
        if idea.status == IdeaStatus.DEFENDING or idea.status == IdeaStatus.IN_VOTING:
            registry.move_idea(idea, IdeaStatus.ADVANCING, tier=cell.tier + 1)
            result.winner_ids.append(idea.id)
    for ci in cell.ideas:
        ci.outcome = CellOutcome.WON
    logger.info("cell %s had no voters; %d idea(s) advance unopposed", cell.id, len(result.winner_ids))
    _cell_completed_event(db, cell, result, now)
    db.flush()
    return result


def abandon_cell(db: Session, cell: Cell, now: Optional[datetime] = None) -> Optional[CellResult]:
    """Close a cell whose contest was decided elsewhere; every idea in it is eliminated.

    Runs inside the caller's transaction and does not advance the tier.
    """
    now = now or utcnow()
    voters = voter_count(db, cell.id)
    if not _claim(db, cell, CellStatus.ABANDONED, now, False):
        return None
    ideas = _ideas_of(db, cell)
    _store_tallies(cell, tally_cell(db, cell))
    result = _abandon(cell, ideas, voters)
    _cell_completed_event(db, cell, result, now)
    db.flush()
    return result
