import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tallybot.config import get_settings


@pytest.fixture
def client(monkeypatch, tmp_path, repo, make_orchestrator):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "unused.json"))
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    get_settings.cache_clear()
    from tallybot.api import routes

    monkeypatch.setattr(routes, "repo", repo)
    monkeypatch.setattr(routes, "orchestrator", make_orchestrator())
    app = FastAPI()
    app.include_router(routes.router)
    yield TestClient(app)
    get_settings.cache_clear()


def test_create_group(client, repo, alice, bob):
    response = client.post("/groups", json={"name": "Flat", "created_by": alice.id, "members": [bob.id, alice.id]})
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Flat"
    assert body["members"] == [alice.id, bob.id]
    assert [g.name for g in repo.groups_for(bob.id)] == ["Flat"]


def test_create_group_with_unknown_member(client, repo, alice):
    response = client.post("/groups", json={"name": "Flat", "created_by": alice.id, "members": ["nobody"]})
    assert response.status_code == 404
    assert "nobody" in response.json()["detail"]
    assert repo.groups_for(alice.id) == []


def test_added_member_can_log_group_expenses(client, repo, group, alice):
    dave = repo.get_or_create_participant("900", "Dave")
    response = client.post(f"/groups/{group.id}/members", json={"participant_id": dave.id})
    assert response.status_code == 200
    assert dave.id in response.json()["members"]

    response = client.post("/messages", json={"user_id": dave.id, "text": "150 pizza"})
    assert response.status_code == 200
    [proposal] = response.json()
    assert "pizza" in proposal["text"]
    assert "Group: Trip" in proposal["text"]


def test_add_member_not_found(client, group, alice):
    assert client.post(f"/groups/{group.id}/members", json={"participant_id": "nobody"}).status_code == 404
    assert client.post("/groups/missing/members", json={"participant_id": alice.id}).status_code == 404


def test_add_ghost(client, repo, group):
    response = client.post(f"/groups/{group.id}/ghosts", json={"name": "Dave", "aliases": ["davo"]})
    assert response.status_code == 200
    ghost = response.json()
    assert ghost["name"] == "Dave"
    assert [g.id for g in repo.get_group(group.id).ghost_members] == [ghost["id"]]

    assert client.post("/groups/missing/ghosts", json={"name": "Eve"}).status_code == 404


def test_balances_for_unknown_group(client):
    assert client.get("/groups/missing/balances").status_code == 404
