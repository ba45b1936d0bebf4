import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

from coachdesk.database import Base  # noqa: E402
from coachdesk.models import availability, booking, habit, messaging, package, subscription, training, user  # noqa: E402,F401
from coachdesk.models.user import CLIENT_ROLE, COACH_ROLE, User  # noqa: E402
from coachdesk.services import events  # noqa: E402


@pytest.fixture
def db_engine():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def event_bus():
    events.bus.clear()
    yield events.bus
    events.bus.clear()


@pytest.fixture
def make_user(db):
    def _make_user(name: str, role: str = CLIENT_ROLE, coach: User | None = None, timezone: str = 'UTC') -> User:
        new_user = User(
            email=f"{name.lower().replace(' ', '.')}@example.com",
            name=name,
            role=role,
            timezone=timezone,
            coach_id=coach.id if coach else None,
        )
        db.add(new_user)
        db.commit()
        db.refresh(new_user)
        return new_user

    return _make_user


@pytest.fixture
def coach(make_user) -> User:
    return make_user('Casey Coach', role=COACH_ROLE)


@pytest.fixture
def client_user(make_user, coach) -> User:
    return make_user('Jamie Lee', coach=coach)
