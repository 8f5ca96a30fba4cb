"""Idea registry: deliberations, membership, idea submission and idea lifecycle.

Every idea status change in the engine goes through :func:`move_idea`, which
refuses edges that are not in :data:`ALLOWED_TRANSITIONS`.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.core.errors import (
    CapacityExceeded,
    DeliberationNotFound,
    DuplicateSubmission,
    IdeaNotFound,
    InvalidInput,
    InvalidTransition,
    SubmissionClosed,
)
from app.models.deliberation import Deliberation, DeliberationMember
from app.models.enums import IdeaStatus, Phase
from app.models.idea import Idea
from app.services.events import log_event


logger = logging.getLogger(__name__)

S = IdeaStatus

ALLOWED_TRANSITIONS: dict[IdeaStatus, frozenset[IdeaStatus]] = {
    S.PENDING: frozenset({S.QUEUED, S.BENCHED, S.RETIRED}),
    S.BENCHED: frozenset({S.QUEUED, S.RETIRED}),
    S.QUEUED: frozenset({S.IN_VOTING, S.ADVANCING, S.WINNER, S.ELIMINATED}),
    S.IN_VOTING: frozenset({S.ADVANCING, S.RECYCLED, S.ELIMINATED, S.WINNER}),
    S.RECYCLED: frozenset({S.IN_VOTING, S.ELIMINATED}),
    S.ADVANCING: frozenset({S.QUEUED, S.IN_VOTING, S.WINNER}),
    S.WINNER: frozenset({S.DEFENDING}),
    S.DEFENDING: frozenset({S.QUEUED, S.ADVANCING, S.RECYCLED, S.ELIMINATED, S.WINNER}),
    S.ELIMINATED: frozenset(),
    S.RETIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

MAX_IDEA_LENGTH = 2000


def can_move(current: IdeaStatus, target: IdeaStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def move_idea(idea: Idea, target: IdeaStatus, *, tier: Optional[int] = None) -> Idea:
    """Move an idea along one lifecycle edge, optionally re-homing it to a tier."""
    if not can_move(idea.status, target):
        raise InvalidTransition(idea.id, idea.status.value, target.value)
    logger.debug("idea %s: %s -> %s", idea.id, idea.status.value, target.value)
    idea.status = target
    if tier is not None:
        idea.tier = tier
    return idea


def get_deliberation(db: Session, deliberation_id: uuid.UUID) -> Deliberation:
    deliberation = db.get(Deliberation, deliberation_id)
    if deliberation is None:
        raise DeliberationNotFound(deliberation_id)
    return deliberation


def get_idea(db: Session, idea_id: uuid.UUID) -> Idea:
    idea = db.get(Idea, idea_id)
    if idea is None:
        raise IdeaNotFound(idea_id)
    return idea


def create_deliberation(
    db: Session,
    *,
    creator_id: uuid.UUID,
    question: str,
    now: Optional[datetime] = None,
    **options: Any,
) -> Deliberation:
    """Create a deliberation in SUBMISSION; the creator becomes its first member."""
    now = now or utcnow()
    settings = get_settings()
    question = (question or "").strip()
    if not question:
        raise InvalidInput("question is required")

    options.setdefault("cell_voters_target", settings.fcfs_voters_per_cell)
    options.setdefault("accumulation_timeout_seconds", settings.accumulation_timeout_seconds)
    submission_seconds = options.pop("submission_seconds", None)
    if submission_seconds:
        options["submission_ends_at"] = now + timedelta(seconds=int(submission_seconds))

    deliberation = Deliberation(
        question=question,
        creator_id=creator_id,
        phase=Phase.SUBMISSION,
        created_at=now,
        **options,
    )
    db.add(deliberation)
    db.flush()
    db.add(DeliberationMember(deliberation_id=deliberation.id, participant_id=creator_id, joined_at=now))
    db.commit()
    db.refresh(deliberation)
    logger.info("deliberation %s created by %s", deliberation.id, creator_id)
    return deliberation


def join_deliberation(
    db: Session,
    deliberation_id: uuid.UUID,
    participant_id: uuid.UUID,
    now: Optional[datetime] = None,
    *,
    commit: bool = True,
) -> DeliberationMember:
    """Add a participant to the eligible pool. Joining twice returns the existing membership."""
    get_deliberation(db, deliberation_id)
    member = db.execute(
        select(DeliberationMember).where(
            DeliberationMember.deliberation_id == deliberation_id,
            DeliberationMember.participant_id == participant_id,
        )
    ).scalar_one_or_none()
    if member is not None:
        return member

    member = DeliberationMember(
        deliberation_id=deliberation_id,
        participant_id=participant_id,
        joined_at=now or utcnow(),
    )
    db.add(member)
    if commit:
        db.commit()
        db.refresh(member)
    else:
        db.flush()
    return member


def is_member(db: Session, deliberation_id: uuid.UUID, participant_id: uuid.UUID) -> bool:
    return (
        db.execute(
            select(DeliberationMember.id).where(
                DeliberationMember.deliberation_id == deliberation_id,
                DeliberationMember.participant_id == participant_id,
            )
        ).first()
        is not None
    )


def member_ids(db: Session, deliberation_id: uuid.UUID) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(DeliberationMember.participant_id)
            .where(DeliberationMember.deliberation_id == deliberation_id)
            .order_by(DeliberationMember.joined_at.asc(), DeliberationMember.id.asc())
        ).scalars()
    )


def list_ideas(
    db: Session,
    deliberation_id: uuid.UUID,
    statuses: Optional[tuple[IdeaStatus, ...]] = None,
    tier: Optional[int] = None,
) -> list[Idea]:
    stmt = select(Idea).where(Idea.deliberation_id == deliberation_id)
    if statuses:
        stmt = stmt.where(Idea.status.in_(statuses))
    if tier is not None:
        stmt = stmt.where(Idea.tier == tier)
    stmt = stmt.order_by(Idea.created_at.asc(), Idea.id.asc())
    return list(db.execute(stmt).scalars())


def accepts_challengers(deliberation: Deliberation) -> bool:
    if deliberation.phase == Phase.ACCUMULATING:
        return True
    return deliberation.phase == Phase.VOTING and deliberation.accumulation_enabled


def submit_idea(
    db: Session,
    deliberation_id: uuid.UUID,
    author_id: uuid.UUID,
    text: str,
    now: Optional[datetime] = None,
) -> Idea:
    """Register an idea.

    During SUBMISSION the idea is QUEUED for tier 1. While a rolling
    deliberation accumulates challengers (or runs a challenge round) it is
    stored as PENDING until the next challenge round picks it up.
    """
    now = now or utcnow()
    deliberation = get_deliberation(db, deliberation_id)
    text = (text or "").strip()
    if not text:
        raise InvalidInput("text is required")
    if len(text) > MAX_IDEA_LENGTH:
        raise InvalidInput(f"text must be at most {MAX_IDEA_LENGTH} characters")

    if deliberation.phase == Phase.SUBMISSION:
        ends_at = as_utc(deliberation.submission_ends_at)
        if ends_at is not None and ends_at <= now:
            raise SubmissionClosed("Submission period has ended")
        status = IdeaStatus.QUEUED
        is_new = False
        # Authors compete with one idea per deliberation.
        author_scope = None
    elif accepts_challengers(deliberation):
        status = IdeaStatus.PENDING
        is_new = True
        # Challengers: one waiting idea per author.
        author_scope = (IdeaStatus.PENDING,)
    else:
        raise SubmissionClosed(f"Deliberation is not accepting ideas (phase {deliberation.phase.value})")

    if deliberation.one_idea_per_author:
        stmt = select(Idea.id).where(Idea.deliberation_id == deliberation_id, Idea.author_id == author_id)
        if author_scope:
            stmt = stmt.where(Idea.status.in_(author_scope))
        if db.execute(stmt).first() is not None:
            raise DuplicateSubmission(author_id)

    if deliberation.idea_cap is not None:
        count_stmt = select(func.count(Idea.id)).where(Idea.deliberation_id == deliberation_id)
        if status == IdeaStatus.PENDING:
            count_stmt = count_stmt.where(Idea.status == IdeaStatus.PENDING)
        if (db.execute(count_stmt).scalar() or 0) >= deliberation.idea_cap:
            raise CapacityExceeded(deliberation.idea_cap)

    join_deliberation(db, deliberation_id, author_id, now, commit=False)

    idea = Idea(
        deliberation_id=deliberation_id,
        author_id=author_id,
        text=text,
        tier=1,
        status=status,
        is_new=is_new,
        created_at=now,
    )
    db.add(idea)
    db.flush()
    log_event(
        db,
        event_type="idea_submitted",
        payload={
            "deliberation_id": str(deliberation_id),
            "idea_id": str(idea.id),
            "status": status.value,
        },
        deliberation_id=deliberation_id,
        actor_participant_id=author_id,
        now=now,
        commit=False,
    )
    db.commit()
    db.refresh(idea)
    logger.info("idea %s submitted to %s as %s", idea.id, deliberation_id, status.value)
    return idea
