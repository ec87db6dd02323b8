from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from steward import main


@pytest.fixture
def client(orchestrator, history):
    # No context manager: the lifespan (root check, registry lock) is not run.
    main.app.state.orchestrator = orchestrator
    yield TestClient(main.app)
    del main.app.state.orchestrator


def test_create_and_list(client) -> None:
    response = client.post("/api/apps", json={"name": "blog"})
    assert response.status_code == 200
    assert response.json()["stage"] == "uninitialized"

    body = client.get("/api/apps").json()
    assert body["current"] == "blog"
    assert [a["name"] for a in body["apps"]] == ["blog"]

    record = client.get("/api/apps/blog").json()
    assert record["port"] == 5000
    assert record["service_name"] == "steward_app_blog"


def test_invalid_name_is_bad_request(client) -> None:
    response = client.post("/api/apps", json={"name": "no spaces"})
    assert response.status_code == 400


def test_unknown_app_is_not_found(client) -> None:
    assert client.get("/api/apps/ghost").status_code == 404
    assert client.put("/api/apps/ghost/port", json={"port": 6000}).status_code == 404
    assert client.post("/api/apps/ghost/restart").status_code == 404


def test_deleting_current_app_conflicts(client) -> None:
    client.post("/api/apps", json={"name": "blog"})

    response = client.delete("/api/apps/blog", params={"confirm": True})

    assert response.status_code == 409
    assert "blog" in [a["name"] for a in client.get("/api/apps").json()["apps"]]


def test_delete_requires_confirmation(client) -> None:
    client.post("/api/apps", json={"name": "blog"})
    client.post("/api/current", json={"name": "default"})

    assert client.delete("/api/apps/blog").json()["cancelled"] is True
    response = client.delete("/api/apps/blog", params={"confirm": True})

    assert response.json()["stage"] == "removed"
    assert client.get("/api/apps/blog").status_code == 404


def test_setup_and_port_conflict(client) -> None:
    client.post("/api/apps", json={"name": "blog"})
    client.post("/api/apps", json={"name": "shop"})

    setup = client.post("/api/apps/blog/setup", json={"port_choice": "custom", "port": 5050})
    assert setup.status_code == 200
    assert setup.json()["stage"] == "active"

    conflict = client.put("/api/apps/shop/port", json={"port": 5050})
    assert conflict.status_code == 400
    assert "5050" in conflict.json()["detail"]


def test_server_type_update(client) -> None:
    client.post("/api/apps", json={"name": "blog"})

    assert client.put("/api/apps/blog/server-type", json={"server_type": "flask"}).status_code == 200
    assert client.get("/api/apps/blog").json()["server_type"] == "flask"
    assert client.put("/api/apps/blog/server-type", json={"server_type": "cgi"}).status_code == 400


def test_service_action(client, runner) -> None:
    client.post("/api/apps", json={"name": "blog"})

    response = client.post("/api/apps/blog/restart")

    assert response.status_code == 200
    assert runner.commands()[-1] == "sudo systemctl restart steward_app_blog.service"


def test_status_and_history(client) -> None:
    client.post("/api/apps", json={"name": "blog"})
    client.post("/api/firewall/rebuild")

    status = client.get("/api/status").json()
    assert status["total"] == 2
    assert status["active"] == 0

    history = client.get("/api/history").json()
    assert [run["workflow"] for run in history] == ["rebuild_firewall", "create"]
    assert client.get("/api/history", params={"application": "blog"}).json()[0]["workflow"] == "create"
