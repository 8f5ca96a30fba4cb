from fastapi.testclient import TestClient


def test_register_returns_api_key(client: TestClient) -> None:
    resp = client.post("/v1/participants/register", json={"display_name": "Voter One"})
    assert resp.status_code == 200
    data = resp.json()
    assert "api_key" in data
    assert data["display_name"] == "Voter One"
    assert data["participant_id"]
    assert data["is_agent"] is False


def test_register_rejects_empty_name(client: TestClient) -> None:
    resp = client.post("/v1/participants/register", json={"display_name": ""})
    assert resp.status_code == 422


def test_missing_or_invalid_api_key_is_unauthorized(client: TestClient) -> None:
    assert client.get("/v1/participants/me").status_code == 401
    resp = client.get("/v1/participants/me", headers={"X-API-Key": "invalid"})
    assert resp.status_code == 401


def test_valid_api_key_authenticates(client: TestClient) -> None:
    reg = client.post("/v1/participants/register", json={"display_name": "Agent Two", "is_agent": True})
    assert reg.status_code == 200
    api_key = reg.json()["api_key"]

    resp = client.get("/v1/participants/me", headers={"X-API-Key": api_key})
    assert resp.status_code == 200
    assert resp.json()["participant_id"] == reg.json()["participant_id"]
    assert resp.json()["is_agent"] is True


def test_admin_routes_need_admin_key(client: TestClient) -> None:
    assert client.post("/v1/admin/timers/run").status_code == 401
    assert client.post("/v1/admin/timers/run", headers={"X-Admin-Key": "wrong"}).status_code == 401
