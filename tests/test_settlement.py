import uuid
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bidflow.db import Base
from bidflow.models.models import AuditLog, Bid, MaterialRequest, Payment, User
from bidflow.services import bids as ledger
from bidflow.services import settlement
from bidflow.services.audit import get_audit_logs, verify_integrity
from bidflow.services.errors import Conflict
from bidflow.services.notifications import NotificationOutbox


def test_accepting_material_bid_creates_pending_payment(db, outbox, people, material_request, make_bid):
    bid = make_bid(people["supplier"], material_request=material_request, amount="10000.00")

    ledger.update_bid_status(db, outbox, bid.id, "accepted", acted_by=people["customer"].id)

    db.refresh(material_request)
    assert material_request.status == "awarded"

    [payment] = db.query(Payment).all()
    assert payment.payer_id == people["customer"].id
    assert payment.payee_id == people["supplier"].id
    assert payment.amount == Decimal("10000.00")
    assert payment.payment_status == "pending"
    assert payment.payment_method == "bank_transfer"
    assert payment.bid_id == bid.id
    assert payment.material_request_id == material_request.id
    assert payment.source_type == "bid"

    types = [n.type for n in outbox.pending]
    assert types == ["bid_accepted", "payment_created"]
    assert outbox.pending[1].user_id == people["supplier"].id
    assert '"Steel beams"' in outbox.pending[1].message


def test_accepting_project_bid_awards_project(db, outbox, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)

    ledger.update_bid_status(db, outbox, bid.id, "accepted", acted_by=people["customer"].id)

    db.refresh(project)
    assert project.status == "in_progress"
    assert project.awarded_bid_id == bid.id
    assert db.query(Payment).count() == 0
    assert db.query(AuditLog).filter(AuditLog.entity_type == "project", AuditLog.action == "AWARD").count() == 1


def test_second_accept_has_no_side_effects(db, outbox, people, material_request, make_bid):
    bid = make_bid(people["supplier"], material_request=material_request, amount="10000.00")
    ledger.update_bid_status(db, outbox, bid.id, "accepted")
    outbox.drain()

    with pytest.raises(Conflict):
        ledger.update_bid_status(db, outbox, bid.id, "accepted")

    assert db.query(Payment).count() == 1
    assert outbox.pending == []


def test_only_one_bid_wins_an_offer(db, outbox, people, project, make_bid):
    first = make_bid(people["constructor"], project=project)
    second = make_bid(people["rival"], project=project)

    ledger.update_bid_status(db, outbox, first.id, "accepted")
    outbox.drain()

    with pytest.raises(Conflict):
        ledger.update_bid_status(db, outbox, second.id, "accepted")

    db.refresh(second)
    db.refresh(project)
    assert second.status == "pending"
    assert project.awarded_bid_id == first.id
    assert outbox.pending == []


def test_settlement_failure_rolls_back_bid(db, outbox, people, material_request, make_bid, monkeypatch):
    bid = make_bid(people["supplier"], material_request=material_request)

    def broken_ledger(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(settlement, "record_settlement_payment", broken_ledger)

    with pytest.raises(RuntimeError):
        ledger.update_bid_status(db, outbox, bid.id, "accepted")

    stored = db.query(Bid).filter(Bid.id == bid.id).one()
    db.refresh(material_request)
    assert stored.status == "pending"
    assert stored.responded_at is None
    assert material_request.status == "active"
    assert db.query(Payment).count() == 0
    assert db.query(AuditLog).count() == 0
    assert outbox.pending == []


def test_acceptance_leaves_an_audit_trail(db, outbox, people, material_request, make_bid):
    bid = make_bid(people["supplier"], material_request=material_request, amount="10000.00")

    ledger.update_bid_status(db, outbox, bid.id, "accepted", acted_by=people["customer"].id)

    [bid_entry] = get_audit_logs(db, entity_type="bid", entity_id=bid.id)
    assert bid_entry.action == "ACCEPT"
    assert bid_entry.actor_id == people["customer"].id
    assert bid_entry.changes_json == {"status": {"before": "pending", "after": "accepted"}}
    assert len(bid_entry.integrity_hash) == 64
    assert verify_integrity(bid_entry)

    bid_entry.changes_json = {"status": {"before": "pending", "after": "rejected"}}
    assert not verify_integrity(bid_entry)
    db.rollback()

    [award] = get_audit_logs(db, entity_type="material_request", entity_id=material_request.id)
    assert award.context == {"bid_id": str(bid.id)}
    assert len(get_audit_logs(db, entity_type="payment")) == 1


@pytest.fixture()
def file_sessions(tmp_path):
    """Sessions on a file database so each one gets its own connection."""
    engine = create_engine(f"sqlite:///{tmp_path / 'bidflow.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


def test_stale_session_loses_concurrent_accept(file_sessions):
    with file_sessions() as setup:
        owner = User(id=uuid.uuid4(), email="olive@example.com", user_role="customer", first_name="Olive", last_name="Owner")
        supplier = User(id=uuid.uuid4(), email="sid@example.com", user_role="supplier", first_name="Sid", last_name="Supply")
        setup.add_all([owner, supplier])
        setup.flush()
        rebar = MaterialRequest(user_id=owner.id, title="Rebar", status="active")
        setup.add(rebar)
        setup.flush()
        bid = Bid(
            bidder_user_id=supplier.id,
            bidder_role="supplier",
            material_request_id=rebar.id,
            bid_amount=Decimal("500.00"),
            proposed_timeline="1 week",
            description="Rebar delivered to site by truck.",
            status="pending",
        )
        setup.add(bid)
        setup.commit()
        bid_id = bid.id

    stale, fresh = file_sessions(), file_sessions()
    try:
        assert stale.get(Bid, bid_id).status == "pending"

        ledger.update_bid_status(fresh, NotificationOutbox(), bid_id, "accepted")

        late = NotificationOutbox()
        with pytest.raises(Conflict):
            ledger.update_bid_status(stale, late, bid_id, "accepted")

        assert late.pending == []
        assert stale.query(Payment).count() == 1
        assert stale.get(Bid, bid_id).status == "accepted"
    finally:
        stale.close()
        fresh.close()
