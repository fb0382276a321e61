"""Integration tests for budgets, membership, invitations and metadata bundles."""

from collections.abc import Callable

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.db import BUDGET_META, INVITATIONS, TRANSACTIONS
from tests.conftest import bearer, make_budget, signup

HTTP_200_OK = 200
HTTP_400_BAD_REQUEST = 400
HTTP_403_FORBIDDEN = 403
HTTP_404_NOT_FOUND = 404
HTTP_409_CONFLICT = 409


def invite(client: TestClient, token: str, budget_id: int, email: str) -> dict:
    """Ask the owner's budget to take in a user by email."""
    response = client.post(f"/api/budgets/{budget_id}/members", json={"email": email}, headers=bearer(token))
    if response.status_code != HTTP_200_OK:
        msg = f"Member request failed: {response.status_code} {response.text}"
        raise AssertionError(msg)
    return response.json()


def test_budget_listing_is_per_user(client: TestClient) -> None:
    """Users see only the budgets they own or belong to."""
    ana = signup(client, "ana@example.com")
    eve = signup(client, "eve@example.com")
    budget_id = make_budget(client, ana, "Household")
    ana_ids = [b["id"] for b in client.get("/api/budgets", headers=bearer(ana)).json()]
    eve_ids = [b["id"] for b in client.get("/api/budgets", headers=bearer(eve)).json()]
    if ana_ids != [budget_id] or eve_ids:
        msg = f"Unexpected listings: ana={ana_ids} eve={eve_ids}"
        raise AssertionError(msg)
    response = client.get(f"/api/budgets/{budget_id}", headers=bearer(eve))
    if response.status_code != HTTP_404_NOT_FOUND:
        msg = f"Expected status {HTTP_404_NOT_FOUND}, got {response.status_code}"
        raise AssertionError(msg)


def test_existing_user_is_added_directly(client: TestClient) -> None:
    """Inviting a registered email makes that user a member at once."""
    ana = signup(client, "ana@example.com")
    bob = signup(client, "bob@example.com")
    budget_id = make_budget(client, ana)
    result = invite(client, ana, budget_id, "bob@example.com")
    if result["status"] != "added":
        msg = f"Expected status added, got {result}"
        raise AssertionError(msg)
    if client.get(f"/api/budgets/{budget_id}", headers=bearer(bob)).status_code != HTTP_200_OK:
        msg = "Expected the added member to see the budget"
        raise AssertionError(msg)


def test_invitation_accept_then_consumed(client: TestClient) -> None:
    """An invitation can be accepted once; any further use is a conflict."""
    ana = signup(client, "ana@example.com")
    budget_id = make_budget(client, ana)
    token = invite(client, ana, budget_id, "carl@example.com")["token"]
    carl = signup(client, "carl@example.com")
    accepted = client.post(f"/api/invitations/{token}/accept", headers=bearer(carl))
    if accepted.status_code != HTTP_200_OK or accepted.json() != {"status": "accepted", "budgetId": budget_id}:
        msg = f"Unexpected accept response: {accepted.status_code} {accepted.text}"
        raise AssertionError(msg)
    if budget_id not in [b["id"] for b in client.get("/api/budgets", headers=bearer(carl)).json()]:
        msg = "Expected the invitee to be a member after accepting"
        raise AssertionError(msg)
    for action in ("accept", "decline"):
        again = client.post(f"/api/invitations/{token}/{action}", headers=bearer(carl))
        if again.status_code != HTTP_409_CONFLICT or again.json() != {"detail": "already_consumed"}:
            msg = f"Expected 409 already_consumed on {action}, got {again.status_code} {again.text}"
            raise AssertionError(msg)


def test_invitation_decline(client: TestClient) -> None:
    """A declined invitation grants nothing."""
    ana = signup(client, "ana@example.com")
    budget_id = make_budget(client, ana)
    token = invite(client, ana, budget_id, "dan@example.com")["token"]
    dan = signup(client, "dan@example.com")
    declined = client.post(f"/api/invitations/{token}/decline", headers=bearer(dan))
    if declined.json() != {"status": "declined"}:
        msg = f"Unexpected decline response: {declined.text}"
        raise AssertionError(msg)
    if client.get("/api/budgets", headers=bearer(dan)).json():
        msg = "Expected no budgets after declining"
        raise AssertionError(msg)


def test_expired_invitation(make_app: Callable[..., FastAPI]) -> None:
    """Accepting an expired invitation is rejected."""
    client = TestClient(make_app(invitation_ttl_seconds=-1))
    ana = signup(client, "ana@example.com")
    budget_id = make_budget(client, ana)
    token = invite(client, ana, budget_id, "eve@example.com")["token"]
    eve = signup(client, "eve@example.com")
    response = client.post(f"/api/invitations/{token}/accept", headers=bearer(eve))
    if response.status_code != HTTP_400_BAD_REQUEST or response.json() != {"detail": "expired"}:
        msg = f"Expected 400 expired, got {response.status_code} {response.text}"
        raise AssertionError(msg)


def test_owner_only_operations(client: TestClient) -> None:
    """Members cannot rename, delete or invite on someone else's budget."""
    ana = signup(client, "ana@example.com")
    bob = signup(client, "bob@example.com")
    budget_id = make_budget(client, ana)
    invite(client, ana, budget_id, "bob@example.com")
    attempts = [
        client.put(f"/api/budgets/{budget_id}", json={"name": "Mine"}, headers=bearer(bob)),
        client.delete(f"/api/budgets/{budget_id}", headers=bearer(bob)),
        client.post(f"/api/budgets/{budget_id}/members", json={"email": "x@example.com"}, headers=bearer(bob)),
    ]
    for response in attempts:
        if response.status_code != HTTP_403_FORBIDDEN:
            msg = f"Expected status {HTTP_403_FORBIDDEN}, got {response.status_code} {response.text}"
            raise AssertionError(msg)
    renamed = client.put(f"/api/budgets/{budget_id}", json={"name": "Family"}, headers=bearer(ana))
    if renamed.json()["name"] != "Family":
        msg = f"Expected the owner to rename the budget, got {renamed.text}"
        raise AssertionError(msg)


def test_delete_budget_cascades(app: FastAPI, client: TestClient) -> None:
    """Deleting a budget removes its transactions, invitations and metadata."""
    ana = signup(client, "ana@example.com")
    budget_id = make_budget(client, ana)
    keep_id = make_budget(client, ana, "Other")
    for target in (budget_id, keep_id):
        client.post(
            "/api/transactions/bulk",
            json={"budgetId": target, "items": [{"type": "expense", "amount": 5, "date": "2024-03-01"}]},
            headers=bearer(ana),
        )
    invite(client, ana, budget_id, "nobody@example.com")
    client.put(f"/api/budgets/{budget_id}/meta", json={"categories": ["Rent"]}, headers=bearer(ana))

    response = client.delete(f"/api/budgets/{budget_id}", headers=bearer(ana))
    if response.json() != {"status": "deleted"}:
        msg = f"Unexpected delete response: {response.text}"
        raise AssertionError(msg)
    store = app.state.store
    if {t["budgetId"] for t in store.read(TRANSACTIONS)} != {keep_id}:
        msg = "Expected only the other budget's transactions to remain"
        raise AssertionError(msg)
    if any(i["budgetId"] == budget_id for i in store.read(INVITATIONS)):
        msg = "Expected the budget's invitations to be removed"
        raise AssertionError(msg)
    if str(budget_id) in store.read(BUDGET_META):
        msg = "Expected the budget's metadata bundle to be removed"
        raise AssertionError(msg)


def test_meta_bundle_replace_and_notify(app: FastAPI, client: TestClient) -> None:
    """PUT replaces the whole bundle, stamps updatedAt and publishes a meta update."""
    ana = signup(client, "ana@example.com")
    budget_id = make_budget(client, ana)
    empty = client.get(f"/api/budgets/{budget_id}/meta", headers=bearer(ana)).json()
    if empty != {"categories": [], "members": [], "sources": [], "updatedAt": 0}:
        msg = f"Expected an empty bundle, got {empty}"
        raise AssertionError(msg)
    sub = app.state.notifier.subscribe(budget_id)
    sub.queue.get_nowait()
    body = {"categories": ["Rent", "Food"], "members": ["Ana"], "sources": ["Main"]}
    saved = client.put(f"/api/budgets/{budget_id}/meta", json=body, headers=bearer(ana)).json()
    if saved["categories"] != ["Rent", "Food"] or not saved["updatedAt"]:
        msg = f"Unexpected saved bundle: {saved}"
        raise AssertionError(msg)
    replaced = client.put(f"/api/budgets/{budget_id}/meta", json={"categories": ["Rent"]}, headers=bearer(ana))
    if replaced.json()["members"] != []:
        msg = f"Expected a full replacement, got {replaced.json()}"
        raise AssertionError(msg)
    update = sub.queue.get_nowait()
    if update.data != {"budgetId": budget_id, "op": "meta"}:
        msg = f"Unexpected update payload: {update.data}"
        raise AssertionError(msg)
    app.state.notifier.unsubscribe(sub)
