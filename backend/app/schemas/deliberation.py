from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.enums import AdvancementPolicy, AllocationMode, VotingMode


class DeliberationCreateRequest(BaseModel):
    question: str = Field(min_length=1, max_length=2000)
    allocation_mode: AllocationMode = AllocationMode.FCFS
    voting_mode: VotingMode = VotingMode.POINTS
    advancement_policy: AdvancementPolicy = AdvancementPolicy.EXHAUST_QUEUE
    group_quorum: bool = False
    cell_voters_target: Optional[int] = Field(default=None, ge=1)
    # 0 keeps the deliberation untimed.
    voting_timeout_seconds: int = Field(default=0, ge=0)
    submission_seconds: Optional[int] = Field(default=None, ge=1)
    accumulation_enabled: bool = False
    accumulation_timeout_seconds: Optional[int] = Field(default=None, ge=1)
    accumulation_threshold: Optional[int] = Field(default=None, ge=1)
    supermajority_enabled: bool = False
    one_idea_per_author: bool = True
    idea_cap: Optional[int] = Field(default=None, ge=1)
    must_vote_participant_id: Optional[UUID] = None

    def engine_options(self) -> dict:
        """Keyword options for ``registry.create_deliberation``; unset optionals fall back to settings."""
        return self.model_dump(exclude={"question"}, exclude_none=True)


class IdeaSubmitRequest(BaseModel):
    text: str
