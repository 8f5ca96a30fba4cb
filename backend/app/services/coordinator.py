"""Tier coordinator.

Drives a deliberation through SUBMISSION -> VOTING -> (ACCUMULATING | COMPLETED).
It decides when a tier is done and whether the advancing ideas need another
tier, a final vote, or nothing at all. In rolling mode it also runs the
challenge rounds that pit new ideas against the sitting champion.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.errors import InvalidPhase
from app.models.cell import Cell, CellIdea, CellParticipant
from app.models.deliberation import Deliberation, Tier
from app.models.enums import (
    CLOSED_CELL_STATUSES,
    AdvancementPolicy,
    AllocationMode,
    CellStatus,
    IdeaStatus,
    Phase,
    SeatStatus,
    TierStatus,
)
from app.models.idea import Idea
from app.services import allocator, evaluator, pollination, registry
from app.services.events import log_event


logger = logging.getLogger(__name__)

MIN_CHALLENGE_POOL = 5


def tier_cells(db: Session, deliberation: Deliberation, tier: int) -> list[Cell]:
    return list(
        db.execute(
            select(Cell)
            .where(
                Cell.deliberation_id == deliberation.id,
                Cell.challenge_round == deliberation.challenge_round,
                Cell.tier == tier,
            )
            .order_by(Cell.created_at.asc(), Cell.id.asc())
        ).scalars()
    )


def get_tier(db: Session, deliberation: Deliberation, tier: int) -> Optional[Tier]:
    return db.execute(
        select(Tier).where(
            Tier.deliberation_id == deliberation.id,
            Tier.challenge_round == deliberation.challenge_round,
            Tier.number == tier,
        )
    ).scalar_one_or_none()


def allocate_tier(db: Session, deliberation: Deliberation, tier: int, now: datetime) -> list[Cell]:
    """Form cells for the tier and wave through cells nobody was seated in."""
    cells = allocator.form_cells(db, deliberation, tier, now)
    for cell in cells:
        if cell.votes_needed == 0:
            evaluator.default_advance_cell(db, cell, now)
    return cells


def open_final_vote(
    db: Session,
    deliberation: Deliberation,
    pool: Sequence[Idea],
    tier: int,
    now: datetime,
) -> Cell:
    """One last cell holding every remaining idea, open to every member."""
    settings = get_settings()
    deliberation.current_tier = tier
    allocator.open_tier(db, deliberation, tier, now)
    members = registry.member_ids(db, deliberation.id)

    deadline = None
    if deliberation.voting_timeout_seconds:
        deadline = now + timedelta(seconds=deliberation.voting_timeout_seconds)
    human_window = None
    if settings.final_vote_human_window_seconds:
        human_window = now + timedelta(seconds=settings.final_vote_human_window_seconds)

    cell = Cell(
        deliberation_id=deliberation.id,
        challenge_round=deliberation.challenge_round,
        tier=tier,
        status=CellStatus.VOTING,
        votes_needed=max(1, len(members)),
        is_final_vote=True,
        reserved_for_humans_until=human_window,
        created_at=now,
        voting_deadline=deadline,
    )
    db.add(cell)
    db.flush()
    for idea in pool:
        db.add(CellIdea(cell_id=cell.id, idea_id=idea.id))
        if idea.status != IdeaStatus.DEFENDING:
            registry.move_idea(idea, IdeaStatus.IN_VOTING)
        idea.tier = tier
        idea.times_presented += 1
    if deliberation.allocation_mode == AllocationMode.BALANCED:
        for participant_id in members:
            db.add(
                CellParticipant(
                    cell_id=cell.id,
                    participant_id=participant_id,
                    status=SeatStatus.ACTIVE,
                    joined_at=now,
                )
            )
    db.flush()
    logger.info(
        "deliberation %s: final vote at tier %s between %d idea(s), %d voter(s) needed",
        deliberation.id,
        tier,
        len(pool),
        cell.votes_needed,
    )
    return cell


def _begin_bracket(db: Session, deliberation: Deliberation, pool: Sequence[Idea], now: datetime) -> None:
    settings = get_settings()
    if len(pool) < settings.cell_size_min:
        open_final_vote(db, deliberation, pool, 1, now)
        return
    allocate_tier(db, deliberation, 1, now)


def _crown(db: Session, deliberation: Deliberation, idea: Idea, tier: int, now: datetime) -> None:
    deliberation.champion_id = idea.id
    if deliberation.accumulation_enabled:
        deliberation.phase = Phase.ACCUMULATING
        deliberation.accumulation_ends_at = now + timedelta(seconds=deliberation.accumulation_timeout_seconds)
        deliberation.champion_entered_tier = max(2, tier)
    else:
        deliberation.phase = Phase.COMPLETED
        deliberation.completed_at = now
    log_event(
        db,
        event_type="winner_declared",
        payload={
            "deliberation_id": str(deliberation.id),
            "idea_id": str(idea.id),
            "tier": tier,
            "challenge_round": deliberation.challenge_round,
            "phase": deliberation.phase.value,
        },
        deliberation_id=deliberation.id,
        now=now,
        commit=False,
    )
    logger.info("deliberation %s: idea %s declared winner at tier %s", deliberation.id, idea.id, tier)


def _complete_without_winner(db: Session, deliberation: Deliberation, now: datetime) -> None:
    deliberation.phase = Phase.COMPLETED
    deliberation.completed_at = now
    deliberation.champion_id = None
    logger.warning("deliberation %s completed without a winner", deliberation.id)


def start_voting(db: Session, deliberation_id: uuid.UUID, now: Optional[datetime] = None) -> dict[str, Any]:
    """Close submissions and open tier 1."""
    now = now or utcnow()
    deliberation = registry.get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.SUBMISSION:
        raise InvalidPhase(Phase.SUBMISSION.value, deliberation.phase.value)

    ideas = registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.QUEUED,))
    if not ideas:
        deliberation.phase = Phase.COMPLETED
        deliberation.completed_at = now
        db.commit()
        logger.info("deliberation %s: no ideas submitted, completed", deliberation.id)
        return {"status": deliberation.phase.value, "reason": "no_ideas"}

    deliberation.phase = Phase.VOTING
    deliberation.current_tier = 1
    log_event(
        db,
        event_type="voting_started",
        payload={"deliberation_id": str(deliberation.id), "ideas": len(ideas)},
        deliberation_id=deliberation.id,
        now=now,
        commit=False,
    )

    if len(ideas) == 1:
        registry.move_idea(ideas[0], IdeaStatus.WINNER)
        _crown(db, deliberation, ideas[0], 1, now)
        db.commit()
        return {"status": deliberation.phase.value, "reason": "single_idea", "winner_id": str(ideas[0].id)}

    _begin_bracket(db, deliberation, ideas, now)
    db.commit()
    check_tier_completion(db, deliberation, 1, now)
    cells = tier_cells(db, deliberation, 1)
    logger.info("deliberation %s: voting started with %d idea(s)", deliberation.id, len(ideas))
    return {"status": deliberation.phase.value, "reason": "voting_started", "cells": len(cells), "tier": 1}


def on_cell_closed(db: Session, cell_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
    cell = evaluator.get_cell(db, cell_id)
    deliberation = registry.get_deliberation(db, cell.deliberation_id)
    if cell.challenge_round != deliberation.challenge_round:
        return False
    return check_tier_completion(db, deliberation, cell.tier, now)


def _tier_ready(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    closed: int,
    still_open: int,
) -> bool:
    if still_open == 0:
        return True
    if deliberation.advancement_policy != AdvancementPolicy.PRIME_GATE:
        return False
    # Gate on 3, 5, 7, ... closed cells, and only when the early winners
    # already need another regular tier.
    if closed < 3 or closed % 2 == 0:
        return False
    settings = get_settings()
    advancing = db.execute(
        select(func.count(Idea.id)).where(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING,
            Idea.tier == tier + 1,
        )
    ).scalar() or 0
    return advancing > settings.cell_size_max


def _absorb_stragglers(db: Session, deliberation: Deliberation, now: datetime) -> None:
    """Winners of cells that closed after their tier moved on join the current tier.

    An open final vote takes them as extra candidates; otherwise they queue
    for the current tier's next cells.
    """
    current = deliberation.current_tier
    late = db.execute(
        select(Idea).where(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING,
            Idea.tier <= current,
        )
    ).scalars().all()
    if not late:
        return
    final = next(
        (c for c in tier_cells(db, deliberation, current) if c.is_final_vote and c.status == CellStatus.VOTING),
        None,
    )
    if final is not None:
        for idea in late:
            registry.move_idea(idea, IdeaStatus.IN_VOTING, tier=current)
            idea.times_presented += 1
            db.add(CellIdea(cell_id=final.id, idea_id=idea.id))
        db.commit()
        logger.info("deliberation %s: %d late winner(s) joined final cell %s", deliberation.id, len(late), final.id)
        return

    for idea in late:
        registry.move_idea(idea, IdeaStatus.QUEUED, tier=current)
    db.commit()
    logger.info("deliberation %s: %d late winner(s) queued into tier %s", deliberation.id, len(late), current)
    check_tier_completion(db, deliberation, current, now)


def _retire_stragglers(db: Session, deliberation: Deliberation, tier: int, now: datetime) -> None:
    """Once the final has closed nothing below it can still compete."""
    open_cells = db.execute(
        select(Cell).where(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.tier < tier,
            Cell.status == CellStatus.VOTING,
        )
    ).scalars().all()
    for cell in open_cells:
        evaluator.abandon_cell(db, cell, now)
    leftovers = db.execute(
        select(Idea).where(
            Idea.deliberation_id == deliberation.id,
            Idea.status.in_([IdeaStatus.QUEUED, IdeaStatus.RECYCLED]),
        )
    ).scalars().all()
    for idea in leftovers:
        registry.move_idea(idea, IdeaStatus.ELIMINATED)
    if open_cells or leftovers:
        logger.info(
            "deliberation %s: final closed; %d open cell(s) abandoned, %d idea(s) eliminated",
            deliberation.id,
            len(open_cells),
            len(leftovers),
        )


def _waiting_champion(db: Session, deliberation: Deliberation) -> Optional[Idea]:
    if deliberation.champion_id is None:
        return None
    champion = db.get(Idea, deliberation.champion_id)
    if champion is None or champion.status != IdeaStatus.DEFENDING or champion.tier != 0:
        return None
    return champion


def check_tier_completion(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    now: Optional[datetime] = None,
) -> bool:
    """Advance the deliberation past ``tier`` when the tier is done.

    Safe to call any number of times; returns True only for the call that
    closed the tier.
    """
    now = now or utcnow()
    if deliberation.phase != Phase.VOTING:
        return False
    if tier < deliberation.current_tier:
        _absorb_stragglers(db, deliberation, now)
        return False

    tier_row = get_tier(db, deliberation, tier)
    if tier_row is None or tier_row.status == TierStatus.COMPLETED:
        return False

    final = next((c for c in tier_cells(db, deliberation, tier) if c.is_final_vote), None)
    if final is not None:
        if final.status not in CLOSED_CELL_STATUSES:
            return False
        _retire_stragglers(db, deliberation, tier, now)
        _close_tier(db, deliberation, tier_row, now, advancing=[])
        winner = next(
            (
                idea
                for idea in db.execute(select(Idea).where(Idea.id.in_(final.idea_ids))).scalars()
                if idea.status == IdeaStatus.WINNER
            ),
            None,
        )
        if winner is not None:
            _crown(db, deliberation, winner, tier, now)
        else:
            _complete_without_winner(db, deliberation, now)
        db.commit()
        return True

    allocate_tier(db, deliberation, tier, now)
    db.flush()
    cells = tier_cells(db, deliberation, tier)
    closed = sum(1 for c in cells if c.status in CLOSED_CELL_STATUSES)
    if not _tier_ready(db, deliberation, tier, closed, len(cells) - closed):
        db.commit()
        return False

    _advance(db, deliberation, tier_row, tier, now)
    return True


def _close_tier(db: Session, deliberation: Deliberation, tier_row: Tier, now: datetime, advancing: Sequence[Idea]) -> None:
    tier_row.status = TierStatus.COMPLETED
    tier_row.completed_at = now
    log_event(
        db,
        event_type="tier_complete",
        payload={
            "deliberation_id": str(deliberation.id),
            "tier": tier_row.number,
            "challenge_round": tier_row.challenge_round,
            "advancing": [str(idea.id) for idea in advancing],
        },
        deliberation_id=deliberation.id,
        now=now,
        commit=False,
    )
    logger.info(
        "deliberation %s: tier %s complete, %d idea(s) advancing",
        deliberation.id,
        tier_row.number,
        len(advancing),
    )


def _advance(db: Session, deliberation: Deliberation, tier_row: Tier, tier: int, now: datetime) -> None:
    settings = get_settings()
    next_tier = tier + 1

    for idea in registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.RECYCLED,), tier=tier):
        registry.move_idea(idea, IdeaStatus.ELIMINATED)
    for idea in registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.QUEUED,), tier=tier):
        registry.move_idea(idea, IdeaStatus.ADVANCING, tier=next_tier)
    db.flush()

    pool = registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.ADVANCING,), tier=next_tier)
    pollination.promote_top_comments(db, [idea.id for idea in pool], next_tier)

    champion = _waiting_champion(db, deliberation)
    if champion is not None:
        entry_tier = deliberation.champion_entered_tier or 2
        if next_tier >= entry_tier or len(pool) + 1 <= settings.cell_size_max:
            registry.move_idea(champion, IdeaStatus.ADVANCING, tier=next_tier)
            pool.append(champion)
            logger.info("deliberation %s: champion %s joins at tier %s", deliberation.id, champion.id, next_tier)

    _close_tier(db, deliberation, tier_row, now, advancing=pool)

    if len(pool) > settings.cell_size_max:
        deliberation.current_tier = next_tier
        for idea in pool:
            registry.move_idea(idea, IdeaStatus.QUEUED)
        db.flush()
        allocate_tier(db, deliberation, next_tier, now)
        db.commit()
        check_tier_completion(db, deliberation, next_tier, now)
        return

    if len(pool) >= 2:
        open_final_vote(db, deliberation, pool, next_tier, now)
    elif len(pool) == 1:
        registry.move_idea(pool[0], IdeaStatus.WINNER)
        _crown(db, deliberation, pool[0], tier, now)
    else:
        _complete_without_winner(db, deliberation, now)
    db.commit()


def split_challengers(
    challengers: Sequence[Idea],
    min_pool: int,
) -> tuple[list[Idea], list[Idea], list[Idea]]:
    """Return (retire, compete, bench).

    Ideas with two or more losses are retired while the pool stays at
    ``min_pool`` or above; the ones that cannot be retired sit on the bench.
    """
    if len(challengers) <= min_pool:
        return [], list(challengers), []

    can_retire = len(challengers) - min_pool
    retire: list[Idea] = []
    compete: list[Idea] = []
    bench: list[Idea] = []
    for idea in sorted(challengers, key=lambda i: -i.losses):
        if idea.losses >= 2 and len(retire) < can_retire:
            retire.append(idea)
        elif idea.losses >= 2:
            bench.append(idea)
        else:
            compete.append(idea)
    return retire, compete, bench


def _extend_accumulation(db: Session, deliberation: Deliberation, now: datetime, reason: str) -> dict[str, Any]:
    deliberation.accumulation_ends_at = now + timedelta(seconds=deliberation.accumulation_timeout_seconds)
    db.commit()
    logger.info("deliberation %s: accumulation extended (%s)", deliberation.id, reason)
    return {"extended": True, "reason": reason}


def start_challenge_round(db: Session, deliberation_id: uuid.UUID, now: Optional[datetime] = None) -> dict[str, Any]:
    """Pit accumulated challengers against the champion."""
    now = now or utcnow()
    settings = get_settings()
    deliberation = registry.get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.ACCUMULATING:
        raise InvalidPhase(Phase.ACCUMULATING.value, deliberation.phase.value)
    champion = db.get(Idea, deliberation.champion_id) if deliberation.champion_id else None
    if champion is None or champion.status != IdeaStatus.WINNER:
        raise InvalidPhase("ACCUMULATING with a champion", deliberation.phase.value)

    pending = [i for i in registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.PENDING,)) if i.is_new]
    benched = registry.list_ideas(db, deliberation.id, statuses=(IdeaStatus.BENCHED,))
    if not pending and not benched:
        return _extend_accumulation(db, deliberation, now, "no_challengers")

    min_pool = max(MIN_CHALLENGE_POOL, 2 * (deliberation.champion_entered_tier or 2))
    retire, compete, bench = split_challengers(pending + benched, min_pool)
    for idea in retire:
        registry.move_idea(idea, IdeaStatus.RETIRED)
    for idea in bench:
        if idea.status == IdeaStatus.PENDING:
            registry.move_idea(idea, IdeaStatus.BENCHED)
    if not compete:
        return _extend_accumulation(db, deliberation, now, "not_enough_challengers")

    registry.move_idea(champion, IdeaStatus.DEFENDING)
    champion.times_presented = 0
    deliberation.challenge_round += 1
    deliberation.phase = Phase.VOTING
    deliberation.current_tier = 1
    deliberation.accumulation_ends_at = None
    for idea in compete:
        registry.move_idea(idea, IdeaStatus.QUEUED, tier=1)
        idea.is_new = False
        idea.times_presented = 0

    pool: list[Idea] = list(compete)
    if len(compete) + 1 <= settings.cell_size_max:
        champion.tier = 1
        deliberation.champion_entered_tier = 1
        pool.append(champion)
    else:
        # Waits outside the bracket until its entry tier.
        champion.tier = 0

    log_event(
        db,
        event_type="challenge_round_started",
        payload={
            "deliberation_id": str(deliberation.id),
            "challenge_round": deliberation.challenge_round,
            "champion_id": str(champion.id),
            "challengers": len(compete),
            "retired": len(retire),
            "benched": len(bench),
        },
        deliberation_id=deliberation.id,
        now=now,
        commit=False,
    )
    db.flush()
    _begin_bracket(db, deliberation, pool, now)
    db.commit()
    logger.info(
        "deliberation %s: challenge round %s with %d challenger(s)",
        deliberation.id,
        deliberation.challenge_round,
        len(compete),
    )
    check_tier_completion(db, deliberation, 1, now)
    return {
        "extended": False,
        "challenge_round": deliberation.challenge_round,
        "challengers": len(compete),
        "retired": len(retire),
        "benched": len(bench),
        "champion_seeded": champion.tier == 1,
    }


def maybe_start_challenge(db: Session, deliberation_id: uuid.UUID, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    """Start a challenge round once enough challengers have piled up."""
    deliberation = registry.get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.ACCUMULATING or not deliberation.accumulation_threshold:
        return None
    waiting = db.execute(
        select(func.count(Idea.id)).where(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.PENDING,
            Idea.is_new.is_(True),
        )
    ).scalar() or 0
    if waiting < deliberation.accumulation_threshold:
        return None
    return start_challenge_round(db, deliberation_id, now)


def close_deliberation(db: Session, deliberation_id: uuid.UUID, now: Optional[datetime] = None) -> Deliberation:
    """End rolling mode; the sitting champion stands."""
    now = now or utcnow()
    deliberation = registry.get_deliberation(db, deliberation_id)
    if deliberation.phase != Phase.ACCUMULATING:
        raise InvalidPhase(Phase.ACCUMULATING.value, deliberation.phase.value)
    deliberation.phase = Phase.COMPLETED
    deliberation.completed_at = now
    deliberation.accumulation_ends_at = None
    db.commit()
    db.refresh(deliberation)
    logger.info("deliberation %s closed", deliberation.id)
    return deliberation
