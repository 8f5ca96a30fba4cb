import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.api.v1 import participants as participants_api
from app.db.base import Base
from app.models import cell as cell_model  # noqa: F401
from app.models import comment as comment_model  # noqa: F401
from app.models import deliberation as deliberation_model  # noqa: F401
from app.models import event as event_model  # noqa: F401
from app.models import idea as idea_model  # noqa: F401
from app.models.participant import Participant
from app.services import registry


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

# Engine-level tests run on a fixed clock well clear of the wall clock the API tests use.
T0 = datetime(2030, 1, 1, tzinfo=timezone.utc)

engine = create_engine(SQLALCHEMY_DATABASE_URL, future=True, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def override_get_db() -> Generator:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    # Every router takes its session from participants.get_db.
    app.dependency_overrides[participants_api.get_db] = override_get_db

    yield

    Base.metadata.drop_all(bind=engine)
    app.dependency_overrides.clear()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def people(db: Session) -> Callable[..., list[Participant]]:
    """Create participants directly; they never authenticate over HTTP."""

    def _make(count: int, is_agent: bool = False) -> list[Participant]:
        made = []
        for _ in range(count):
            participant = Participant(
                display_name=f"p-{uuid.uuid4().hex[:8]}",
                api_key_prefix="-",
                api_key_hash="-",
                is_agent=is_agent,
                created_at=T0,
            )
            db.add(participant)
            made.append(participant)
        db.commit()
        return made

    return _make


@pytest.fixture()
def seeded(db: Session, people):
    """Build a deliberation in SUBMISSION with ``ideas`` ideas (one per author) and ``voters`` extra members.

    Returns ``(deliberation, authors, voters)``; the first author is the creator.
    """

    def _seed(ideas: int, voters: int = 0, **options):
        authors = people(max(ideas, 1))
        extra = people(voters)
        deliberation = registry.create_deliberation(
            db,
            creator_id=authors[0].id,
            question="What should we do next?",
            now=T0,
            **options,
        )
        for i, author in enumerate(authors[:ideas]):
            registry.submit_idea(db, deliberation.id, author.id, f"idea {i}", now=T0 + timedelta(seconds=i + 1))
        for voter in extra:
            registry.join_deliberation(db, deliberation.id, voter.id, T0)
        return deliberation, authors, extra

    return _seed
