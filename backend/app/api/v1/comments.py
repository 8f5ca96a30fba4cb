import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.v1.participants import get_current_participant, get_db
from app.models.participant import Participant
from app.schemas.cell import UpvoteResponse
from app.services import pollination


router = APIRouter()


@router.post("/{comment_id}/upvote", response_model=UpvoteResponse)
def upvote(
    comment_id: uuid.UUID,
    db: Session = Depends(get_db),
    participant: Participant = Depends(get_current_participant),
) -> UpvoteResponse:
    """Toggle: a second upvote by the same participant withdraws the first."""
    comment, upvoted = pollination.upvote_comment(db, participant.id, comment_id)
    return UpvoteResponse(upvoted=upvoted, upvote_count=comment.upvote_count, reach_tier=comment.reach_tier)
