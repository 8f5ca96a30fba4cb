import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.enums import CellOutcome, CellStatus, SeatStatus


class Cell(Base):
    __tablename__ = "cells"
    __table_args__ = (
        Index("ix_cells_deliberation_round_tier", "deliberation_id", "challenge_round", "tier"),
        Index("ix_cells_status_finalizes_at", "status", "finalizes_at"),
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
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[CellStatus] = mapped_column(
        Enum(CellStatus, native_enum=False, length=16),
        nullable=False,
        default=CellStatus.VOTING,
    )
    votes_needed: Mapped[int] = mapped_column(Integer, nullable=False)
    group_quorum: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_final_vote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reserved_for_humans_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    voting_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_extended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalizes_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_timeout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Bumped by every accepted vote; a vote whose read version is stale is a conflict.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ideas: Mapped[list["CellIdea"]] = relationship(
        "CellIdea",
        back_populates="cell",
        cascade="all, delete-orphan",
    )
    seats: Mapped[list["CellParticipant"]] = relationship(
        "CellParticipant",
        back_populates="cell",
        cascade="all, delete-orphan",
    )

    @property
    def idea_ids(self) -> list[uuid.UUID]:
        return [ci.idea_id for ci in self.ideas]


class CellIdea(Base):
    __tablename__ = "cell_ideas"
    __table_args__ = (
        UniqueConstraint("cell_id", "idea_id", name="uq_cell_ideas_cell_idea"),
        Index("ix_cell_ideas_idea_id", "idea_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    idea_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ideas.id"),
        nullable=False,
    )
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_voters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outcome: Mapped[Optional[CellOutcome]] = mapped_column(
        Enum(CellOutcome, native_enum=False, length=16),
        nullable=True,
    )

    cell: Mapped["Cell"] = relationship("Cell", back_populates="ideas")


class CellParticipant(Base):
    __tablename__ = "cell_participants"
    __table_args__ = (
        UniqueConstraint("cell_id", "participant_id", name="uq_cell_participants_cell_participant"),
        Index("ix_cell_participants_participant_id", "participant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    group_key: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    status: Mapped[SeatStatus] = mapped_column(
        Enum(SeatStatus, native_enum=False, length=16),
        nullable=False,
        default=SeatStatus.ACTIVE,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    voted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cell: Mapped["Cell"] = relationship("Cell", back_populates="seats")


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("cell_id", "participant_id", "idea_id", name="uq_votes_cell_participant_idea"),
        Index("ix_votes_cell_id", "cell_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    idea_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ideas.id"),
        nullable=False,
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    voted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        UniqueConstraint("cell_id", "participant_id", name="uq_reservations_cell_participant"),
        Index("ix_reservations_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    cell_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("cells.id"),
        nullable=False,
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("participants.id"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
