"""Cell allocator.

Packs the formable ideas of a tier into cells of 3-7 and decides who may vote
in each cell. FCFS cells fill on demand through reservations; BALANCED cells
get their seats assigned up front.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Hashable, Optional, Sequence, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.models.cell import Cell, CellIdea, CellParticipant
from app.models.deliberation import Deliberation, Tier
from app.models.enums import AllocationMode, CellStatus, IdeaStatus, SeatStatus, TierStatus, VotingMode
from app.models.idea import Idea
from app.services import registry


logger = logging.getLogger(__name__)

T = TypeVar("T")

FORMABLE_STATUSES = (IdeaStatus.QUEUED, IdeaStatus.RECYCLED, IdeaStatus.DEFENDING)


def calculate_cell_sizes(n: int, target: int = 5, minimum: int = 3, maximum: int = 7) -> list[int]:
    """Plan cell sizes for ``n`` ideas.

    >>> calculate_cell_sizes(12)
    [5, 7]
    """
    if n < minimum:
        return []
    if n <= maximum:
        return [n]

    full, remainder = divmod(n, target)
    sizes = [target] * full
    if remainder == 0:
        return sizes
    if remainder <= maximum - target:
        sizes[-1] += remainder
    elif remainder >= minimum:
        sizes.append(remainder)
    else:
        # Too small for its own cell and too big for one cell to absorb.
        for i in range(remainder):
            sizes[-1 - (i % len(sizes))] += 1
    return sizes


def pack_units(
    units: Sequence[T],
    target: int = 5,
    minimum: int = 3,
    maximum: int = 7,
) -> list[list[T]]:
    """Split any sequence of units (ideas, groups of voters) by the cell size plan."""
    batches: list[list[T]] = []
    start = 0
    for size in calculate_cell_sizes(len(units), target, minimum, maximum):
        batches.append(list(units[start:start + size]))
        start += size
    return batches


def assign_balanced(
    units: Sequence[T],
    cell_authors: Sequence[set[uuid.UUID]],
    members_of: Optional[Callable[[T], set[Hashable]]] = None,
) -> list[list[T]]:
    """Distribute units over cells, least-filled first.

    A unit is kept out of cells that contain an idea written by one of its
    members while a conflict-free cell still has room.
    """
    cell_count = len(cell_authors)
    if cell_count == 0:
        return []
    members_of = members_of or (lambda unit: {unit})
    capacity = math.ceil(len(units) / cell_count) if units else 0
    all_authors = set().union(*cell_authors)

    assignment: list[list[T]] = [[] for _ in range(cell_count)]
    # Authors are placed before free units so they still find a conflict-free cell.
    for unit in sorted(units, key=lambda u: not (members_of(u) & all_authors)):
        members = members_of(unit)
        open_cells = [i for i in range(cell_count) if len(assignment[i]) < capacity]
        clean = [i for i in open_cells if not (members & cell_authors[i])]
        choice = min(clean or open_cells, key=lambda i: (len(assignment[i]), i))
        if not clean:
            logger.debug("unit %s seated with its own idea (no conflict-free cell left)", unit)
        assignment[choice].append(unit)
    return assignment


def open_tier(db: Session, deliberation: Deliberation, number: int, now: datetime) -> Tier:
    """Return the Tier record for the current challenge round, creating it when missing."""
    tier = db.execute(
        select(Tier).where(
            Tier.deliberation_id == deliberation.id,
            Tier.challenge_round == deliberation.challenge_round,
            Tier.number == number,
        )
    ).scalar_one_or_none()
    if tier is not None:
        return tier

    deadline = None
    if deliberation.voting_timeout_seconds:
        deadline = now + timedelta(seconds=deliberation.voting_timeout_seconds)
    tier = Tier(
        deliberation_id=deliberation.id,
        challenge_round=deliberation.challenge_round,
        number=number,
        status=TierStatus.ACTIVE,
        started_at=now,
        deadline=deadline,
    )
    db.add(tier)
    db.flush()
    return tier


def ideas_in_open_cells():
    return (
        select(CellIdea.idea_id)
        .join(Cell, Cell.id == CellIdea.cell_id)
        .where(Cell.status == CellStatus.VOTING)
    )


def formable_ideas(db: Session, deliberation: Deliberation, tier: int) -> list[Idea]:
    """Ideas waiting for a cell at ``tier``, oldest first."""
    settings = get_settings()
    stmt = (
        select(Idea)
        .where(
            Idea.deliberation_id == deliberation.id,
            Idea.tier == tier,
            Idea.status.in_(FORMABLE_STATUSES),
            Idea.times_presented < settings.retry_cap,
            Idea.id.not_in(ideas_in_open_cells()),
        )
        .order_by(Idea.created_at.asc(), Idea.id.asc())
    )
    return list(db.execute(stmt).scalars())


def seated_participant_ids(db: Session, deliberation: Deliberation, tier: int) -> set[uuid.UUID]:
    """Participants holding a seat in an open cell of this round and tier."""
    rows = db.execute(
        select(CellParticipant.participant_id)
        .join(Cell, Cell.id == CellParticipant.cell_id)
        .where(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == tier,
            Cell.status == CellStatus.VOTING,
        )
    ).scalars()
    return set(rows)


def previous_tier_groups(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    eligible: Sequence[uuid.UUID],
) -> list[tuple[str, list[uuid.UUID]]]:
    """Voter groups for ``tier``: one per completed cell of the tier below.

    Members who never sat in such a cell form a group of their own.
    """
    eligible_set = set(eligible)
    rows = db.execute(
        select(Cell.id, CellParticipant.participant_id)
        .join(CellParticipant, CellParticipant.cell_id == Cell.id)
        .where(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == tier - 1,
            Cell.status == CellStatus.COMPLETED,
        )
        .order_by(Cell.created_at.asc(), Cell.id.asc(), CellParticipant.joined_at.asc())
    ).all()

    groups: dict[str, list[uuid.UUID]] = {}
    grouped: set[uuid.UUID] = set()
    for cell_id, participant_id in rows:
        if participant_id not in eligible_set or participant_id in grouped:
            continue
        groups.setdefault(str(cell_id), []).append(participant_id)
        grouped.add(participant_id)
    for participant_id in eligible:
        if participant_id not in grouped:
            groups[str(participant_id)] = [participant_id]
    return list(groups.items())


def _plurality_votes_needed(db: Session, deliberation: Deliberation, tier: int, idea_count: int) -> int:
    if tier == 1:
        return idea_count
    first_tier_cells = db.execute(
        select(func.count(Cell.id)).where(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier == 1,
        )
    ).scalar() or 1
    members = len(registry.member_ids(db, deliberation.id))
    return max(1, math.ceil(members / first_tier_cells))


def _seat_balanced(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    cells: list[Cell],
    batches: list[list[Idea]],
    now: datetime,
) -> None:
    seated = seated_participant_ids(db, deliberation, tier)
    eligible = [pid for pid in registry.member_ids(db, deliberation.id) if pid not in seated]
    cell_authors = [{idea.author_id for idea in batch} for batch in batches]

    if deliberation.group_quorum and tier >= 2:
        groups = previous_tier_groups(db, deliberation, tier, eligible)
        assignment = assign_balanced(groups, cell_authors, members_of=lambda group: set(group[1]))
        for cell, cell_groups in zip(cells, assignment):
            for group_key, participant_ids in cell_groups:
                for participant_id in participant_ids:
                    db.add(
                        CellParticipant(
                            cell_id=cell.id,
                            participant_id=participant_id,
                            group_key=group_key,
                            status=SeatStatus.ACTIVE,
                            joined_at=now,
                        )
                    )
            cell.group_quorum = True
            cell.votes_needed = len(cell_groups)
        return

    assignment = assign_balanced(eligible, cell_authors)
    for cell, participant_ids in zip(cells, assignment):
        for participant_id in participant_ids:
            db.add(
                CellParticipant(
                    cell_id=cell.id,
                    participant_id=participant_id,
                    status=SeatStatus.ACTIVE,
                    joined_at=now,
                )
            )
        cell.votes_needed = len(participant_ids)


def form_cells(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    now: Optional[datetime] = None,
) -> list[Cell]:
    """Create cells for every formable idea at ``tier``.

    Leaves ideas queued when fewer than the minimum cell size are formable.
    BALANCED cells that end up without voters are returned with
    ``votes_needed == 0``; the caller advances their ideas unopposed.
    """
    now = now or utcnow()
    settings = get_settings()
    ideas = formable_ideas(db, deliberation, tier)
    batches = pack_units(ideas, settings.cell_size_target, settings.cell_size_min, settings.cell_size_max)
    if not batches:
        if ideas:
            logger.debug("tier %s of %s: %d idea(s) left queued", tier, deliberation.id, len(ideas))
        return []

    tier_row = open_tier(db, deliberation, tier, now)
    deadline = None
    if deliberation.voting_timeout_seconds:
        deadline = now + timedelta(seconds=deliberation.voting_timeout_seconds)
        tier_deadline = as_utc(tier_row.deadline)
        if tier_deadline is None or tier_deadline < deadline:
            tier_row.deadline = deadline

    cells: list[Cell] = []
    for batch in batches:
        cell = Cell(
            deliberation_id=deliberation.id,
            challenge_round=deliberation.challenge_round,
            tier=tier,
            status=CellStatus.VOTING,
            votes_needed=deliberation.cell_voters_target,
            created_at=now,
            voting_deadline=deadline,
        )
        db.add(cell)
        db.flush()
        for idea in batch:
            db.add(CellIdea(cell_id=cell.id, idea_id=idea.id))
            # A seeded champion defends under its own status.
            if idea.status != IdeaStatus.DEFENDING:
                registry.move_idea(idea, IdeaStatus.IN_VOTING)
            idea.times_presented += 1
        if deliberation.allocation_mode == AllocationMode.FCFS and deliberation.voting_mode == VotingMode.PLURALITY:
            cell.votes_needed = _plurality_votes_needed(db, deliberation, tier, len(batch))
        cells.append(cell)

    if deliberation.allocation_mode == AllocationMode.BALANCED:
        _seat_balanced(db, deliberation, tier, cells, batches, now)

    db.flush()
    logger.info(
        "tier %s of %s: formed %d cell(s) sized %s",
        tier,
        deliberation.id,
        len(cells),
        [len(batch) for batch in batches],
    )
    return cells
