import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (Index("ix_participants_api_key_prefix", "api_key_prefix"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    # Narrows the hash check to a handful of rows; the full key is only stored hashed.
    api_key_prefix: Mapped[str] = mapped_column(String(length=16), nullable=False)
    api_key_hash: Mapped[str] = mapped_column(String(length=255), nullable=False)
    # Automated voters wait out the human-priority window on final votes.
    is_agent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    events: Mapped[list["Event"]] = relationship(
        "Event",
        back_populates="actor_participant",
        cascade="all, delete-orphan",
    )
