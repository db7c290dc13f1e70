import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from bidflow.models.models import AuditLog, Bid
from bidflow.schemas.bids import BidCreate
from bidflow.services import bids as ledger
from bidflow.services.errors import (
    Conflict,
    DuplicateBid,
    Forbidden,
    ForbiddenSelfBid,
    NotFound,
    ValidationError,
)


def _payload(bidder, *, project=None, material_request=None, amount="1500.00", role=None):
    return BidCreate(
        project_id=project.id if project is not None else None,
        material_request_id=material_request.id if material_request is not None else None,
        bidder_user_id=bidder.id,
        bidder_role=role or bidder.user_role,
        bid_amount=Decimal(amount),
        proposed_timeline="4 weeks",
        description="Full remodel including cabinets and counters.",
    )


def test_submit_bid_on_project(db, outbox, people, project):
    bid = ledger.submit_bid(db, outbox, _payload(people["constructor"], project=project))

    assert bid.status == "pending"
    assert bid.bid_type == "project"
    assert bid.bid_amount == Decimal("1500.00")

    [notice] = outbox.pending
    assert notice.type == "new_bid"
    assert notice.user_id == people["customer"].id
    assert "Bob Builder" in notice.message
    assert "Kitchen remodel" in notice.message
    assert "$1,500.00" in notice.message

    audit = db.query(AuditLog).filter(AuditLog.entity_id == bid.id).one()
    assert audit.action == "CREATE"
    assert audit.integrity_hash


def test_bid_must_target_exactly_one_offer(people, project, material_request):
    with pytest.raises(PydanticValidationError):
        _payload(people["supplier"], project=project, material_request=material_request)
    with pytest.raises(PydanticValidationError):
        _payload(people["supplier"])


def test_unknown_offer_is_not_found(db, outbox, people):
    payload = BidCreate(
        project_id=uuid.uuid4(),
        bidder_user_id=people["constructor"].id,
        bidder_role="constructor",
        bid_amount=Decimal("10.00"),
        proposed_timeline="1 week",
        description="A description that is long enough.",
    )
    with pytest.raises(NotFound):
        ledger.submit_bid(db, outbox, payload)


def test_closed_offer_rejects_bids(db, outbox, people, project):
    project.status = "in_progress"
    db.commit()

    with pytest.raises(Conflict) as exc:
        ledger.submit_bid(db, outbox, _payload(people["constructor"], project=project))
    assert exc.value.status_code == 409
    assert outbox.pending == []


def test_legacy_empty_status_is_biddable(db, outbox, people, material_request):
    material_request.status = ""
    db.commit()

    bid = ledger.submit_bid(db, outbox, _payload(people["supplier"], material_request=material_request))
    assert bid.status == "pending"


def test_self_bid_is_forbidden(db, outbox, people, project):
    with pytest.raises(ForbiddenSelfBid) as exc:
        ledger.submit_bid(db, outbox, _payload(people["customer"], project=project, role="constructor"))
    assert exc.value.status_code == 403
    assert db.query(Bid).count() == 0


def test_duplicate_bid(db, outbox, people, project):
    ledger.submit_bid(db, outbox, _payload(people["constructor"], project=project))

    with pytest.raises(DuplicateBid) as exc:
        ledger.submit_bid(db, outbox, _payload(people["constructor"], project=project, amount="1200.00"))
    assert exc.value.status_code == 400
    assert db.query(Bid).count() == 1


def test_reject_bid(db, outbox, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)

    ledger.update_bid_status(db, outbox, bid.id, "rejected", acted_by=people["customer"].id)

    db.refresh(bid)
    db.refresh(project)
    assert bid.status == "rejected"
    assert bid.responded_at is not None
    assert project.status == "active"
    assert [n.type for n in outbox.pending] == ["bid_rejected"]


def test_decision_requires_offer_owner(db, outbox, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)

    with pytest.raises(Forbidden):
        ledger.update_bid_status(db, outbox, bid.id, "accepted", acted_by=people["rival"].id)

    db.refresh(bid)
    assert bid.status == "pending"


def test_decision_must_be_accept_or_reject(db, outbox, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)
    for status in ("pending", "bogus"):
        with pytest.raises(ValidationError):
            ledger.update_bid_status(db, outbox, bid.id, status)


def test_rejected_bid_cannot_be_accepted(db, outbox, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project, status="rejected")

    with pytest.raises(Conflict) as exc:
        ledger.update_bid_status(db, outbox, bid.id, "accepted")
    assert exc.value.status_code == 409
    assert "already been rejected" in exc.value.message


def test_withdraw_pending_bid(db, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)
    bid_id = bid.id

    ledger.withdraw_bid(db, bid_id, bidder_id=people["constructor"].id)

    assert db.query(Bid).filter(Bid.id == bid_id).first() is None
    assert db.query(AuditLog).filter(AuditLog.entity_id == bid_id, AuditLog.action == "WITHDRAW").count() == 1


def test_withdraw_after_response_conflicts(db, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project, status="accepted")

    with pytest.raises(Conflict) as exc:
        ledger.withdraw_bid(db, bid.id)
    assert exc.value.message == "Cannot withdraw a bid that has already been responded to"

    db.refresh(bid)
    assert bid.status == "accepted"


def test_withdraw_someone_elses_bid(db, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)
    with pytest.raises(Forbidden):
        ledger.withdraw_bid(db, bid.id, bidder_id=people["rival"].id)


def test_list_bids_by_owner(db, people, project, material_request, make_bid):
    make_bid(people["constructor"], project=project)
    make_bid(people["supplier"], material_request=material_request)
    make_bid(people["rival"], project=project)

    received = ledger.list_bids(db, owner_id=people["customer"].id)
    placed = ledger.list_bids(db, bidder_id=people["supplier"].id)

    assert len(received) == 3
    assert [b.bidder_user_id for b in placed] == [people["supplier"].id]
    assert ledger.list_bids(db, owner_id=people["constructor"].id) == []


# ----- HTTP -----

def _body(bidder, **offer):
    body = {
        "bidderUserId": str(bidder.id),
        "bidderRole": bidder.user_role,
        "bidAmount": 10000,
        "proposedTimeline": "2 weeks",
        "description": "Delivery of forty steel beams to site.",
    }
    body.update({k: str(v) for k, v in offer.items()})
    return body


def test_api_submit_bid(client, people, material_request):
    resp = client.post("/bids", json=_body(people["supplier"], materialRequestId=material_request.id))

    assert resp.status_code == 201
    data = resp.json()
    assert data["success"] is True
    assert data["bid"]["bidType"] == "material_request"
    assert data["bid"]["itemTitle"] == "Steel beams"
    assert data["bid"]["bidderName"] == "Sam Supplier"
    assert data["bid"]["bidAmount"] == 10000.0
    assert "X-Request-ID" in resp.headers

    inbox = client.get(f"/notifications/user/{people['customer'].id}").json()
    assert inbox["unreadCount"] == 1
    assert inbox["notifications"][0]["type"] == "new_bid"


def test_api_accepts_snake_case(client, people, project):
    body = {
        "project_id": str(project.id),
        "bidder_user_id": str(people["constructor"].id),
        "bidder_role": "constructor",
        "bid_amount": "750.50",
        "proposed_timeline": "3 days",
        "description": "Small repair job, parts included.",
    }
    resp = client.post("/bids", json=body)
    assert resp.status_code == 201
    assert resp.json()["bid"]["bidAmount"] == 750.5


def test_api_validation_envelope(client, people, project, material_request):
    body = _body(people["supplier"], projectId=project.id, materialRequestId=material_request.id)
    resp = client.post("/bids", json=body)

    assert resp.status_code == 400
    data = resp.json()
    assert data["success"] is False
    assert data["message"] == "Validation failed"
    assert any("either a project or a material request" in e["message"] for e in data["errors"])


def test_api_field_errors(client, people, project):
    body = _body(people["constructor"], projectId=project.id)
    body["bidAmount"] = -5
    body["description"] = "short"
    resp = client.post("/bids", json=body)

    assert resp.status_code == 400
    fields = {e["field"] for e in resp.json()["errors"]}
    assert {"bidAmount", "description"} <= fields


def test_api_self_bid(client, people, project):
    body = _body(people["customer"], projectId=project.id)
    body["bidderRole"] = "constructor"
    resp = client.post("/bids", json=body)

    assert resp.status_code == 403
    assert resp.json()["success"] is False


def test_api_second_accept_conflicts(client, db, people, material_request, make_bid):
    bid = make_bid(people["supplier"], material_request=material_request, amount="10000.00")
    body = {"status": "accepted", "actedBy": str(people["customer"].id)}

    first = client.put(f"/bids/{bid.id}/status", json=body)
    assert first.status_code == 200
    assert first.json()["bid"]["status"] == "accepted"

    second = client.put(f"/bids/{bid.id}/status", json=body)
    assert second.status_code == 409
    assert second.json()["success"] is False

    payments = client.get(f"/payments/client/{people['customer'].id}").json()
    assert payments["count"] == 1
    assert payments["totalPending"] == 10000.0

    supplier_inbox = client.get(f"/notifications/user/{people['supplier'].id}").json()
    assert sorted(n["type"] for n in supplier_inbox["notifications"]) == ["bid_accepted", "payment_created"]


def test_api_listing_routes(client, people, project, material_request, make_bid):
    make_bid(people["constructor"], project=project)
    make_bid(people["supplier"], material_request=material_request)

    assert client.get("/bids").json()["count"] == 2
    assert client.get(f"/bids/project/{project.id}").json()["count"] == 1
    assert client.get(f"/bids/material-request/{material_request.id}").json()["count"] == 1
    assert client.get(f"/bids/customer/{people['customer'].id}").json()["count"] == 2
    assert client.get(f"/bids/bidder/{people['supplier'].id}").json()["count"] == 1
    assert client.get(f"/bids/project/{uuid.uuid4()}").status_code == 404


def test_api_get_and_withdraw(client, people, project, make_bid):
    bid = make_bid(people["constructor"], project=project)

    assert client.get(f"/bids/{bid.id}").json()["bid"]["id"] == str(bid.id)
    assert client.delete(f"/bids/{bid.id}").json()["success"] is True
    missing = client.get(f"/bids/{bid.id}")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "Bid not found"}


def test_blank_text_fields_fail_length_checks(people, project):
    with pytest.raises(PydanticValidationError) as exc:
        BidCreate(
            project_id=project.id,
            bidder_user_id=people["constructor"].id,
            bidder_role="constructor",
            bid_amount=Decimal("100.00"),
            proposed_timeline="  a  ",
            description="          ",
        )
    assert len(exc.value.errors()) == 2


def test_text_fields_are_stored_stripped(db, outbox, people, project):
    padded = BidCreate(
        project_id=project.id,
        bidder_user_id=people["constructor"].id,
        bidder_role="constructor",
        bid_amount=Decimal("100.00"),
        proposed_timeline="   6 weeks   ",
        description="   Framing and drywall for the kitchen.   ",
    )

    bid = ledger.submit_bid(db, outbox, padded)

    assert bid.proposed_timeline == "6 weeks"
    assert bid.description == "Framing and drywall for the kitchen."


def test_unknown_offer_wins_over_unknown_bidder(db, outbox):
    payload = BidCreate(
        project_id=uuid.uuid4(),
        bidder_user_id=uuid.uuid4(),
        bidder_role="constructor",
        bid_amount=Decimal("10.00"),
        proposed_timeline="1 week",
        description="A description that is long enough.",
    )
    with pytest.raises(NotFound):
        ledger.submit_bid(db, outbox, payload)


def test_unknown_bidder_on_open_offer(db, outbox, project):
    payload = BidCreate(
        project_id=project.id,
        bidder_user_id=uuid.uuid4(),
        bidder_role="constructor",
        bid_amount=Decimal("10.00"),
        proposed_timeline="1 week",
        description="A description that is long enough.",
    )
    with pytest.raises(ValidationError) as exc:
        ledger.submit_bid(db, outbox, payload)
    assert exc.value.status_code == 400


def test_api_rejects_whitespace_only_description(client, people, project):
    body = _body(people["constructor"], projectId=project.id)
    body["description"] = " " * 12
    body["proposedTimeline"] = "  a  "
    resp = client.post("/bids", json=body)

    assert resp.status_code == 400
    fields = {e["field"] for e in resp.json()["errors"]}
    assert {"description", "proposedTimeline"} <= fields
