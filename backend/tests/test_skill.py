"""Tests for public discovery endpoints."""

from fastapi.testclient import TestClient


def test_get_skill_returns_200_and_required_keys(client: TestClient) -> None:
    resp = client.get("/skill")
    assert resp.status_code == 200
    data = resp.json()
    for key in ("name", "description", "authentication", "base_url", "capabilities", "rules"):
        assert key in data
    assert data["name"] == "Cellvote"
    assert data["authentication"]["header"] == "X-API-Key"
    assert data["authentication"]["registration_endpoint"] == "/v1/participants/register"
    assert isinstance(data["capabilities"], list)
    assert {"vote", "reserve_seat", "submit_idea"} <= {c["name"] for c in data["capabilities"]}
    assert isinstance(data["rules"], list)


def test_root_and_health(client: TestClient) -> None:
    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["skill_endpoint"] == "/skill"
    assert client.get("/health").json() == {"status": "ok"}
