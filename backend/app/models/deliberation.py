import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.enums import AdvancementPolicy, AllocationMode, Phase, TierStatus, VotingMode


class Deliberation(Base):
    __tablename__ = "deliberations"
    __table_args__ = (Index("ix_deliberations_phase", "phase"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    question: Mapped[str] = mapped_column(Text, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    phase: Mapped[Phase] = mapped_column(
        Enum(Phase, native_enum=False, length=16),
        nullable=False,
        default=Phase.SUBMISSION,
    )
    current_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    challenge_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    allocation_mode: Mapped[AllocationMode] = mapped_column(
        Enum(AllocationMode, native_enum=False, length=16),
        nullable=False,
        default=AllocationMode.FCFS,
    )
    voting_mode: Mapped[VotingMode] = mapped_column(
        Enum(VotingMode, native_enum=False, length=16),
        nullable=False,
        default=VotingMode.POINTS,
    )
    advancement_policy: Mapped[AdvancementPolicy] = mapped_column(
        Enum(AdvancementPolicy, native_enum=False, length=16),
        nullable=False,
        default=AdvancementPolicy.EXHAUST_QUEUE,
    )
    # Higher-tier quorum counts distinct sub-groups instead of individuals.
    group_quorum: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cell_voters_target: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    voting_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = untimed
    submission_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    accumulation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accumulation_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)
    accumulation_threshold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    accumulation_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    supermajority_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    one_idea_per_author: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    idea_cap: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    must_vote_participant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=True,
    )

    champion_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    champion_entered_tier: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    members: Mapped[list["DeliberationMember"]] = relationship(
        "DeliberationMember",
        back_populates="deliberation",
        cascade="all, delete-orphan",
    )
    tiers: Mapped[list["Tier"]] = relationship(
        "Tier",
        back_populates="deliberation",
        cascade="all, delete-orphan",
    )


class DeliberationMember(Base):
    __tablename__ = "deliberation_members"
    __table_args__ = (
        UniqueConstraint("deliberation_id", "participant_id", name="uq_members_deliberation_participant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deliberation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliberations.id"),
        nullable=False,
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    deliberation: Mapped["Deliberation"] = relationship("Deliberation", back_populates="members")


class Tier(Base):
    __tablename__ = "tiers"
    __table_args__ = (
        UniqueConstraint("deliberation_id", "challenge_round", "number", name="uq_tiers_round_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deliberation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deliberations.id"),
        nullable=False,
    )
    challenge_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TierStatus] = mapped_column(
        Enum(TierStatus, native_enum=False, length=16),
        nullable=False,
        default=TierStatus.ACTIVE,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    extended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    deliberation: Mapped["Deliberation"] = relationship("Deliberation", back_populates="tiers")
