"""Comment up-pollination.

Comments earn reach through upvotes and through the idea they are attached to
winning its cell. A cell sees its own comments, comments attached to its ideas
that have reached its tier, and a deterministic sample of weaker comments
from cells that share ideas with it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import CommentNotFound, Conflict, IdeaNotInCell, InvalidInput, NotAParticipant
from app.models.cell import CellIdea
from app.models.comment import Comment, CommentUpvote
from app.services import evaluator, ledger


logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000
LINKED_LIMIT = 20
SAMPLE_POOL = 30
SAMPLE_LIMIT = 10
VISIBILITY_BASE = 5


@dataclass
class VisibleComment:
    comment: Comment
    source: str  # "own", "linked" or "pollinated"


def js_string_hash(value: str) -> int:
    """Classic ``h = (h << 5) - h + c`` string hash, wrapped to a signed 32-bit int."""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def visibility_probability(reach_tier: int, cell_tier: int) -> float:
    if reach_tier >= cell_tier:
        return 1.0
    return float(VISIBILITY_BASE) ** (reach_tier - cell_tier)


def should_show(comment_id: uuid.UUID | str, cell_id: uuid.UUID | str, reach_tier: int, cell_tier: int) -> bool:
    """Same answer for the same comment and cell, every time it is asked."""
    if reach_tier >= cell_tier:
        return True
    bucket = abs(js_string_hash(f"{comment_id}{cell_id}")) % 1000
    return bucket < visibility_probability(reach_tier, cell_tier) * 1000


def compute_reach_tier(upvotes: int) -> int:
    if upvotes <= 0:
        return 0
    return max(1, upvotes // 2)


def get_comment(db: Session, comment_id: uuid.UUID) -> Comment:
    comment = db.get(Comment, comment_id)
    if comment is None:
        raise CommentNotFound(comment_id)
    return comment


def add_comment(
    db: Session,
    participant_id: uuid.UUID,
    cell_id: uuid.UUID,
    text: str,
    idea_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> Comment:
    cell = evaluator.get_cell(db, cell_id)
    if ledger.get_seat(db, cell.id, participant_id) is None:
        raise NotAParticipant(participant_id, cell.id)
    text = (text or "").strip()
    if not text:
        raise InvalidInput("text is required")
    if len(text) > MAX_COMMENT_LENGTH:
        raise InvalidInput(f"text must be at most {MAX_COMMENT_LENGTH} characters")
    if idea_id is not None and idea_id not in cell.idea_ids:
        raise IdeaNotInCell(idea_id, cell.id)

    comment = Comment(
        cell_id=cell.id,
        idea_id=idea_id,
        author_id=participant_id,
        text=text,
        upvote_count=0,
        reach_tier=0,
        created_at=now or utcnow(),
    )
    db.add(comment)
    db.commit()
    db.refresh(comment)
    logger.debug("comment %s added to cell %s", comment.id, cell.id)
    return comment


def upvote_comment(
    db: Session,
    participant_id: uuid.UUID,
    comment_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> tuple[Comment, bool]:
    """Toggle the participant's upvote. Returns the comment and whether it is now upvoted.

    Reach never drops when an upvote is withdrawn.
    """
    comment = get_comment(db, comment_id)
    existing = db.execute(
        select(CommentUpvote).where(
            CommentUpvote.comment_id == comment.id,
            CommentUpvote.participant_id == participant_id,
        )
    ).scalar_one_or_none()

    try:
        if existing is not None:
            db.execute(
                delete(CommentUpvote)
                .where(CommentUpvote.id == existing.id)
                .execution_options(synchronize_session=False)
            )
            delta = -1
        else:
            db.add(CommentUpvote(comment_id=comment.id, participant_id=participant_id, created_at=now or utcnow()))
            db.flush()
            delta = 1
        stmt = update(Comment).where(Comment.id == comment.id)
        if delta < 0:
            stmt = stmt.where(Comment.upvote_count > 0)
        db.execute(
            stmt.values(upvote_count=Comment.upvote_count + delta).execution_options(synchronize_session=False)
        )
        db.refresh(comment)
        comment.reach_tier = max(comment.reach_tier, compute_reach_tier(comment.upvote_count))
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Upvote already recorded; retry", comment_id=comment_id) from exc

    db.refresh(comment)
    return comment, existing is None


def promote_top_comments(db: Session, idea_ids: Iterable[uuid.UUID], reach_tier: int) -> int:
    """Lift the most-upvoted comment(s) on each advancing idea to ``reach_tier``."""
    promoted = 0
    for idea_id in idea_ids:
        top = db.execute(
            select(func.max(Comment.upvote_count)).where(Comment.idea_id == idea_id)
        ).scalar()
        if not top:
            continue
        for comment in db.execute(
            select(Comment).where(Comment.idea_id == idea_id, Comment.upvote_count == top)
        ).scalars():
            if comment.reach_tier < reach_tier:
                comment.reach_tier = reach_tier
                promoted += 1
    if promoted:
        db.flush()
        logger.info("promoted %d comment(s) to reach tier %s", promoted, reach_tier)
    return promoted


def visible_comments(db: Session, cell_id: uuid.UUID) -> list[VisibleComment]:
    cell = evaluator.get_cell(db, cell_id)
    idea_ids = cell.idea_ids
    shown: list[VisibleComment] = []
    seen: set[uuid.UUID] = set()

    def take(comments: Iterable[Comment], source: str) -> None:
        for comment in comments:
            if comment.id not in seen:
                seen.add(comment.id)
                shown.append(VisibleComment(comment=comment, source=source))

    take(
        db.execute(
            select(Comment).where(Comment.cell_id == cell.id).order_by(Comment.created_at.asc(), Comment.id.asc())
        ).scalars(),
        "own",
    )
    if not idea_ids:
        return shown

    ranking = (Comment.reach_tier.desc(), Comment.upvote_count.desc(), Comment.created_at.asc())
    take(
        db.execute(
            select(Comment)
            .where(
                Comment.idea_id.in_(idea_ids),
                Comment.cell_id != cell.id,
                Comment.reach_tier >= cell.tier,
            )
            .order_by(*ranking)
            .limit(LINKED_LIMIT)
        ).scalars(),
        "linked",
    )

    neighbours = select(CellIdea.cell_id).where(CellIdea.idea_id.in_(idea_ids), CellIdea.cell_id != cell.id)
    candidates = db.execute(
        select(Comment)
        .where(
            Comment.cell_id.in_(neighbours),
            Comment.idea_id.is_(None),
            Comment.reach_tier >= 1,
        )
        .order_by(*ranking)
        .limit(SAMPLE_POOL)
    ).scalars()
    sampled = [c for c in candidates if should_show(c.id, cell.id, c.reach_tier, cell.tier)]
    take(sampled[:SAMPLE_LIMIT], "pollinated")
    return shown
