import os
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("AUTO_CREATE_DB", "false")

from bidflow.db import Base, get_db
from bidflow.main import app as api
from bidflow.models.models import Bid, MaterialRequest, Project, User
from bidflow.services.notifications import NotificationOutbox
from bidflow.storage.local_provider import LocalStorageProvider, get_storage


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def outbox():
    return NotificationOutbox()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorageProvider(base_dir=str(tmp_path / "storage"))


@pytest.fixture(scope="session")
def app():
    return api


@pytest.fixture()
def client(app, session_factory, storage):

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


def _user(db, email, role, first, last):
    user = User(id=uuid.uuid4(), email=email, user_role=role, first_name=first, last_name=last)
    db.add(user)
    return user


@pytest.fixture()
def people(db):
    """One customer (offer owner) and one bidder of each role."""
    users = {
        "customer": _user(db, "carol@example.com", "customer", "Carol", "Client"),
        "constructor": _user(db, "bob@example.com", "constructor", "Bob", "Builder"),
        "supplier": _user(db, "sam@example.com", "supplier", "Sam", "Supplier"),
        "architect": _user(db, "ada@example.com", "architect", "Ada", "Architect"),
        "rival": _user(db, "rex@example.com", "constructor", "Rex", "Rival"),
    }
    db.commit()
    return users


@pytest.fixture()
def project(db, people):
    p = Project(user_id=people["customer"].id, title="Kitchen remodel", status="active")
    db.add(p)
    db.commit()
    return p


@pytest.fixture()
def material_request(db, people):
    m = MaterialRequest(user_id=people["customer"].id, title="Steel beams", status="active")
    db.add(m)
    db.commit()
    return m


@pytest.fixture()
def make_bid(db):
    """Insert a bid directly, bypassing the ledger."""

    def _make(bidder, *, project=None, material_request=None, amount="1000.00", status="pending", role=None):
        bid = Bid(
            bidder_user_id=bidder.id,
            bidder_role=role or bidder.user_role,
            project_id=project.id if project is not None else None,
            material_request_id=material_request.id if material_request is not None else None,
            bid_amount=Decimal(amount),
            proposed_timeline="6 weeks",
            description="Complete the work as specified in the listing.",
            status=status,
        )
        db.add(bid)
        db.commit()
        return bid

    return _make
