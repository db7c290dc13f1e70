import asyncio
import threading
import uuid
from decimal import Decimal

import pytest

from bidflow.models.models import Notification
from bidflow.services import notifications
from bidflow.services.notification_hub import NotificationHub


def _requests(people):
    customer = people["customer"].id
    return [
        notifications.new_bid_notice(
            owner_id=customer, bid_id=uuid.uuid4(), bidder_name="Bob Builder",
            offer_title="Kitchen remodel", amount=Decimal("1500"),
        ),
        notifications.payment_notice(
            kind="payment_completed", payee_id=customer, payment_id=uuid.uuid4(), amount=Decimal("99.5"),
        ),
        notifications.design_notice(
            kind="design_submitted", user_id=customer, design_id=uuid.uuid4(),
            design_title="Floor plans", project_title="Kitchen remodel",
        ),
    ]


def test_outbox_drain_empties_queue(people):
    outbox = notifications.NotificationOutbox()
    outbox.extend(_requests(people))
    outbox.extend([None])

    drained = outbox.drain()
    assert len(drained) == 3
    assert outbox.pending == []


def test_deliver_persists_each_notification(engine, db, people):
    delivered = asyncio.run(notifications.deliver_notifications(engine, _requests(people)))

    assert delivered == 3
    rows = db.query(Notification).filter(Notification.user_id == people["customer"].id).all()
    assert {n.type for n in rows} == {"new_bid", "payment_completed", "design_submitted"}
    assert all(not n.is_read for n in rows)


def test_delivery_failure_is_isolated(engine, db, people, monkeypatch):
    real_create = notifications.create_notification
    calls = []

    def flaky_create(session, request):
        calls.append(request.type)
        if request.type == "payment_completed":
            raise RuntimeError("mail relay down")
        return real_create(session, request)

    monkeypatch.setattr(notifications, "create_notification", flaky_create)

    delivered = asyncio.run(notifications.deliver_notifications(engine, _requests(people)))

    assert delivered == 2
    assert calls == ["new_bid", "payment_completed", "design_submitted"]
    assert db.query(Notification).count() == 2


def test_amounts_are_formatted():
    assert notifications.format_amount(Decimal("10000")) == "$10,000.00"
    assert notifications.format_amount(None) == "$0.00"


def test_unknown_template_kind():
    with pytest.raises(ValueError):
        notifications.payment_notice(kind="payment_lost", payee_id=uuid.uuid4(), payment_id=uuid.uuid4(), amount=1)


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


def test_hub_fans_out_to_live_sockets():
    hub = NotificationHub()
    good, dead, other = FakeSocket(), FakeSocket(fail=True), FakeSocket()

    async def scenario():
        await hub.connect("u1", good)
        await hub.connect("u1", dead)
        await hub.connect("u2", other)
        sent = await hub.send_to_user("u1", "new-notification", {"userId": "u1"})
        await hub.disconnect("u1", good)
        await hub.disconnect("u1", dead)
        return sent

    assert asyncio.run(scenario()) == 1
    assert good.sent == [{"event": "new-notification", "data": {"userId": "u1"}}]
    assert other.sent == []
    assert hub.connection_count("u1") == 0
    assert hub.connection_count("u2") == 1


# ----- HTTP -----

def test_api_inbox(client, engine, people):
    asyncio.run(notifications.deliver_notifications(engine, _requests(people)))
    user = people["customer"].id

    inbox = client.get(f"/notifications/user/{user}", params={"limit": 2}).json()
    assert inbox["total"] == 2
    assert inbox["unreadCount"] == 3

    first = inbox["notifications"][0]
    assert client.put(f"/notifications/{first['id']}/read").json()["success"] is True
    unread = client.get(f"/notifications/user/{user}", params={"unreadOnly": "true"}).json()
    assert unread["unreadCount"] == 2
    assert first["id"] not in {n["id"] for n in unread["notifications"]}

    marked = client.put(f"/notifications/user/{user}/read-all").json()
    assert marked["updatedCount"] == 2
    assert client.get(f"/notifications/user/{user}").json()["unreadCount"] == 0

    assert client.delete(f"/notifications/{first['id']}").status_code == 200
    assert client.delete(f"/notifications/{first['id']}").status_code == 404
    assert client.get(f"/notifications/user/{user}").json()["total"] == 2


def test_api_websocket_greets_with_unread_count(client, engine, people):
    asyncio.run(notifications.deliver_notifications(engine, _requests(people)[:1]))

    with client.websocket_connect(f"/notifications/ws/{people['customer'].id}") as ws:
        greeting = ws.receive_json()
        assert greeting == {"event": "unread_count", "data": {"unreadCount": 1}}
        ws.send_text("ping")
        assert ws.receive_text() == "pong"


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_dead_socket_does_not_stop_delivery(engine, db, people, monkeypatch):
    live_hub = NotificationHub()
    monkeypatch.setattr(notifications, "hub", live_hub)
    dead = FakeSocket(fail=True)
    asyncio.run(live_hub.connect(str(people["customer"].id), dead))

    delivered = asyncio.run(notifications.deliver_notifications(engine, _requests(people)))

    assert delivered == 3
    assert db.query(Notification).count() == 3


def test_fanout_failure_is_isolated(engine, db, people, monkeypatch):
    class BrokenHub:
        async def send_to_user(self, user_id, event, payload):
            raise RuntimeError("hub offline")

    monkeypatch.setattr(notifications, "hub", BrokenHub())

    delivered = asyncio.run(notifications.deliver_notifications(engine, _requests(people)))

    assert delivered == 3
    assert db.query(Notification).count() == 3


def test_persistence_runs_off_the_event_loop(engine, people, monkeypatch):
    real_create = notifications.create_notification
    threads = []

    def tracking_create(session, request):
        threads.append(threading.get_ident())
        return real_create(session, request)

    monkeypatch.setattr(notifications, "create_notification", tracking_create)

    async def scenario():
        loop_thread = threading.get_ident()
        await notifications.deliver_notifications(engine, _requests(people))
        return loop_thread

    loop_thread = asyncio.run(scenario())

    assert len(threads) == 3
    assert loop_thread not in threads
