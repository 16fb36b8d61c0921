import time

import pytest
from fastapi.testclient import TestClient

import main
from balances import BalanceRefresher, BalanceResult
from directory import MemberDirectory
from ledger import EXPENSES
from tests.conftest import expense_doc


@pytest.fixture
def engine(file_engine):
    # Watched groups reach the store from listener and refresh threads
    return file_engine


@pytest.fixture
def client(store, ledger, synchronizer):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_ledger] = lambda: ledger
    main.app.dependency_overrides[main.get_synchronizer] = lambda: synchronizer
    main.app.dependency_overrides[main.get_directory] = lambda: MemberDirectory(ledger)
    refresher = BalanceRefresher(synchronizer)
    main.app.dependency_overrides[main.get_refresher] = lambda: refresher
    with TestClient(main.app) as client:
        yield client
    synchronizer.unwatch_all()
    main.app.dependency_overrides.clear()


@pytest.fixture
def trip(client):
    res = client.post("/groups/", json={"name": "Trip", "created_by": "alice", "members": ["bob", "carol"]})
    assert res.status_code == 201
    return res.json()


def _add_dinner(client, group_id, **overrides):
    payload = {"description": "Dinner", "amount": "90", "paid_by": "alice"}
    payload.update(overrides)
    return client.post(f"/groups/{group_id}/expenses/", json=payload)


def test_root(client):
    assert client.get("/").json() == {"message": "Welcome to the BestSplit API"}


def test_create_group_returns_camel_case_record(trip):
    assert trip["name"] == "Trip"
    assert trip["createdBy"] == "alice"
    assert trip["members"] == ["alice", "bob", "carol"]
    assert trip["id"] > 0


def test_create_group_validation_error(client):
    res = client.post("/groups/", json={"name": " ", "created_by": "alice"})

    assert res.status_code == 400
    assert "name" in res.json()["detail"]


def test_list_and_get_groups(client, trip):
    assert [g["id"] for g in client.get("/groups", params={"member": "bob"}).json()] == [trip["id"]]
    assert client.get("/groups", params={"member": "zed"}).json() == []
    assert client.get(f"/groups/{trip['id']}").json()["name"] == "Trip"
    assert client.get("/groups/999").status_code == 404


def test_update_group_and_members(client, trip):
    gid = trip["id"]

    assert client.patch(f"/groups/{gid}", json={"description": "Lisbon"}).json()["description"] == "Lisbon"
    assert client.post(f"/groups/{gid}/members/", json={"member_id": "dave"}).json()["members"][-1] == "dave"
    assert client.delete(f"/groups/{gid}/members/bob").json()["members"] == ["alice", "carol", "dave"]
    assert client.delete(f"/groups/{gid}/members/alice").status_code == 400
    assert client.delete(f"/groups/{gid}/members/bob").status_code == 404


def test_expense_lifecycle(client, ledger, trip):
    gid = trip["id"]

    res = _add_dinner(client, gid)
    assert res.status_code == 201
    expense = res.json()
    assert expense["paidFor"] == {"alice": 30.0, "bob": 30.0, "carol": 30.0}
    assert expense["groupId"] == gid

    detail = client.get(f"/groups/{gid}/expenses/{expense['id']}").json()
    assert detail["splitMode"] == "EQUAL"

    res = client.put(
        f"/groups/{gid}/expenses/{expense['id']}",
        json={
            "description": "Dinner",
            "amount": "90",
            "paid_by": "alice",
            "split_mode": "CUSTOM",
            "custom_shares": {"alice": "10", "bob": "50", "carol": "30"},
        },
    )
    assert res.status_code == 200
    assert res.json()["paidFor"] == {"alice": 10.0, "bob": 50.0, "carol": 30.0}
    assert client.get(f"/groups/{gid}/expenses/{expense['id']}").json()["splitMode"] == "CUSTOM"

    assert [e["id"] for e in client.get(f"/groups/{gid}/expenses/").json()] == [expense["id"]]

    assert client.delete(f"/groups/{gid}/expenses/{expense['id']}").status_code == 204
    assert client.get(f"/groups/{gid}/expenses/{expense['id']}").status_code == 404
    assert ledger.get_all(gid, EXPENSES) == []


def test_custom_split_that_does_not_add_up(client, trip):
    res = _add_dinner(client, trip["id"], split_mode="CUSTOM", custom_shares={"alice": "45", "bob": "45.02"})

    assert res.status_code == 400
    assert client.get(f"/groups/{trip['id']}/expenses/").json() == []


def test_expense_in_unknown_group(client):
    assert _add_dinner(client, 999).status_code == 404


def test_balances_and_settlements(client, trip):
    gid = trip["id"]
    _add_dinner(client, gid)

    balances = client.get(f"/groups/{gid}/balances/").json()
    assert balances["ok"] is True
    assert balances["balances"]["bob"]["alice"] == 30.0
    assert balances["balances"]["alice"]["bob"] == 0.0

    res = client.post(f"/groups/{gid}/settlements/", json={"from_user_id": "bob", "to_user_id": "alice", "amount": "30"})
    assert res.status_code == 201
    assert res.json()["fromUserId"] == "bob"
    assert len(client.get(f"/groups/{gid}/settlements/").json()) == 1

    balances = client.get(f"/groups/{gid}/balances/").json()["balances"]
    assert balances["bob"]["alice"] == 0.0
    assert balances["carol"]["alice"] == 30.0


def test_balance_failure_is_reported(client, trip, monkeypatch):
    monkeypatch.setattr(main, "compute_balances", lambda *args: BalanceResult.failure(trip["id"], "disk I/O error"))

    res = client.get(f"/groups/{trip['id']}/balances/")

    assert res.status_code == 500
    assert "disk I/O error" in res.json()["detail"]


def test_sync_endpoint_pulls_remote_records(client, ledger, trip):
    gid = trip["id"]
    ledger.set(gid, EXPENSES, 500, expense_doc(500, gid, "carol", {"bob": 12.0}))

    report = client.post(f"/groups/{gid}/sync/").json()

    assert report["group_id"] == gid
    assert report["applied"] == 2
    assert not report["failed"]
    assert client.get(f"/groups/{gid}/balances/").json()["balances"]["bob"]["carol"] == 12.0


def test_activity(client, ledger, trip):
    ledger.put_user("alice", {"name": "Alice"})
    _add_dinner(client, trip["id"])

    (entry,) = client.get("/users/bob/activity/").json()

    assert entry["type"] == "EXPENSE"
    assert entry["amount"] == 30.0
    assert entry["payer_name"] == "Alice"
    assert entry["group_name"] == "Trip"


def test_delete_group(client, trip):
    assert client.delete(f"/groups/{trip['id']}").status_code == 204
    assert client.get(f"/groups/{trip['id']}").status_code == 404
    assert client.delete(f"/groups/{trip['id']}").status_code == 404


def test_export_and_import_group(client, trip):
    shared = client.get(f"/groups/{trip['id']}/export").json()
    assert shared == trip

    res = client.post("/groups/import", json=shared)

    assert res.status_code == 201
    imported = res.json()
    assert imported["id"] != trip["id"]
    assert imported["name"] == "Trip"
    assert imported["members"] == trip["members"]
    assert len(client.get("/groups").json()) == 2
    assert client.get("/groups/999/export").status_code == 404
    assert client.post("/groups/import", json={"name": "", "createdBy": "alice"}).status_code == 400


def test_friends(client, ledger):
    ledger.put_user("bob", {"name": "Bob", "email": "bob@example.com"})

    res = client.post("/users/alice/friends/", json={"email": "bob@example.com"})

    assert res.status_code == 201
    assert res.json() == {"id": "bob", "name": "Bob", "email": "bob@example.com"}
    assert client.post("/users/alice/friends/", json={"email": "ghost@example.com"}).status_code == 400
    assert [f["id"] for f in client.get("/users/alice/friends/").json()] == ["bob"]


def _latest_balances(client, group_id, ready):
    for _ in range(100):
        res = client.get(f"/groups/{group_id}/balances/latest")
        if res.status_code == 200 and ready(res.json()["balances"]):
            return True
        time.sleep(0.02)
    return False


def test_watched_group_keeps_latest_balances_current(client, ledger, trip):
    gid = trip["id"]
    assert client.get(f"/groups/{gid}/balances/latest").status_code == 404
    _add_dinner(client, gid)

    assert client.post(f"/groups/{gid}/watch/").status_code == 204
    assert _latest_balances(client, gid, lambda b: b["bob"]["alice"] == 30.0)

    # A change made on another device arrives through the listener
    ledger.set(gid, EXPENSES, 500, expense_doc(500, gid, "carol", {"bob": 12.0}))
    assert _latest_balances(client, gid, lambda b: b["bob"]["carol"] == 12.0)

    assert client.delete(f"/groups/{gid}/watch/").status_code == 204
    assert ledger.listener_count(gid, EXPENSES) == 0


def test_watch_unknown_group(client):
    assert client.post("/groups/999/watch/").status_code == 404
