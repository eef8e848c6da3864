from __future__ import annotations

from fastapi.testclient import TestClient


def test_health_endpoints(client: TestClient) -> None:
    for route in ("/health", "/healthz", "/live"):
        response = client.get(route)
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "rubric-alignment"}


def test_health_does_not_require_trainer(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Trainer-Email": ""})

    assert response.status_code == 200


def test_workflow_steps_endpoint(client: TestClient) -> None:
    response = client.get("/workflow/steps")

    assert response.status_code == 200
    body = response.json()
    assert body["alignment_threshold"] == 80
    assert [step["status"] for step in body["steps"]][:3] == [
        "Task_Creation",
        "Rubric_V1",
        "Rubric_V2",
    ]
