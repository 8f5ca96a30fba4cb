from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class AllocationItem(BaseModel):
    idea_id: UUID
    points: int


class VoteRequest(BaseModel):
    allocations: List[AllocationItem] = Field(default_factory=list)


class VoteResponse(BaseModel):
    accepted: bool
    cell_now_complete: bool
    voter_count: int
    votes_needed: int
    finalizes_at: Optional[datetime] = None


class ReservationResponse(BaseModel):
    id: UUID
    cell_id: UUID
    participant_id: UUID
    created_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class CommentCreateRequest(BaseModel):
    text: str
    idea_id: Optional[UUID] = None


class CommentItem(BaseModel):
    id: UUID
    cell_id: UUID
    idea_id: Optional[UUID] = None
    author_id: UUID
    text: str
    upvote_count: int
    reach_tier: int
    created_at: datetime
    source: Optional[str] = None

    class Config:
        from_attributes = True


class UpvoteResponse(BaseModel):
    upvoted: bool
    upvote_count: int
    reach_tier: int
