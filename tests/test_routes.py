import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from cgistudio.main import create_app
from cgistudio.pipeline.models import ProjectStatus

from conftest import add_project, data_url, png_bytes

PRODUCT = data_url(png_bytes())
SCENE = data_url(png_bytes((0, 0, 120)))


@pytest.fixture
def client(settings, store, pipeline):
    with TestClient(create_app(settings, store, pipeline)) as client:
        yield client


def new_project(**overrides):
    body = {
        "user_id": "user-1",
        "title": "Sofa",
        "description": "make it bigger",
        "product_image_url": PRODUCT,
        "scene_image_url": SCENE,
    }
    body.update(overrides)
    return body


def wait_for_status(client, project_id, user_id="user-1", timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/projects/{project_id}", params={"user_id": user_id}).json()
        if body["status"] in ("completed", "failed") or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["gemini_api_key_set"] is True
    assert response.json()["supabase_configured"] is False


def test_create_image_project_deducts_credit_and_runs(client, store):
    response = client.post("/projects", json=new_project())

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "processing"
    assert body["credits_used"] == 1
    assert store.users["user-1"].credits == 9

    final = wait_for_status(client, body["id"])
    assert final["status"] == "completed"
    assert final["output_image_url"].endswith("/composed.png")
    assert final["actual_cost"] == 4000


def test_create_video_project_costs_five_credits(client, store):
    response = client.post("/projects", json=new_project(content_type="video", include_audio=True))

    assert response.status_code == 201
    assert response.json()["credits_used"] == 5
    assert store.users["user-1"].credits == 5


def test_insufficient_credits(client, store):
    store.users["user-1"] = store.users["user-1"].model_copy(update={"credits": 3})

    response = client.post("/projects", json=new_project(content_type="video"))

    assert response.status_code == 402
    assert "Insufficient credits" in response.json()["detail"]
    assert store.projects == {}


def test_unknown_user(client):
    response = client.post("/projects", json=new_project(user_id="ghost"))
    assert response.status_code == 404


@pytest.mark.parametrize("overrides", [
    {"scene_video_url": "https://cdn.test/scene.mp4"},
    {"scene_image_url": None},
    {"content_type": "video", "video_duration_seconds": 7},
])
def test_invalid_requests_are_rejected(client, overrides):
    assert client.post("/projects", json=new_project(**overrides)).status_code == 422


def test_get_project_checks_ownership(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.COMPLETED))

    assert client.get("/projects/proj-1", params={"user_id": "user-1"}).status_code == 200
    assert client.get("/projects/proj-1", params={"user_id": "user-2"}).status_code == 403
    assert client.get("/projects/missing", params={"user_id": "user-1"}).status_code == 404


def test_list_projects_only_returns_own(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.COMPLETED))
    asyncio.run(add_project(store, id="proj-2", user_id="user-2", status=ProjectStatus.COMPLETED))

    response = client.get("/projects", params={"user_id": "user-1"})

    assert response.status_code == 200
    assert [p["id"] for p in response.json()] == ["proj-1"]


def test_resume_failed_project(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.FAILED, run_id="run-old", error_message="boom"))

    response = client.post("/projects/proj-1/resume", params={"user_id": "user-1"})

    assert response.status_code == 200
    assert wait_for_status(client, "proj-1")["status"] == "completed"


def test_resume_completed_project_conflicts(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.COMPLETED, run_id="run-old"))
    response = client.post("/projects/proj-1/resume", params={"user_id": "user-1"})
    assert response.status_code == 409


def test_cancel_without_active_run_conflicts(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.FAILED))
    response = client.post("/projects/proj-1/cancel", params={"user_id": "user-1"})
    assert response.status_code == 409


def test_delete_project(client, store):
    asyncio.run(add_project(store, status=ProjectStatus.COMPLETED))

    assert client.delete("/projects/proj-1", params={"user_id": "user-2"}).status_code == 403
    assert client.delete("/projects/proj-1", params={"user_id": "user-1"}).status_code == 204
    assert client.get("/projects/proj-1", params={"user_id": "user-1"}).status_code == 404


def test_metrics_endpoint_counts_created_projects(client):
    client.post("/projects", json=new_project())
    snapshot = client.get("/metrics").json()
    assert snapshot["counters"]["projects.created"] == 1
