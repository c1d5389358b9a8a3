"""Tests for webhook handling."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from api.src.main import app
from api.src.routes import webhooks
from api.src.routes.deps import get_pipeline_definition
from api.src.services.github import parse_webhook_payload, verify_signature

DEFINITION = {
    "name": "Deploy",
    "trigger": {"manual": True, "branches": ["main"]},
}

def push_payload(ref):
    return {
        "ref": ref,
        "after": "abc123def456",
        "repository": {
            "name": "site",
            "full_name": "user/site",
            "clone_url": "https://github.com/user/site.git",
        },
        "head_commit": {"id": "abc123def456", "message": "Update"},
        "pusher": {"name": "testuser"},
    }

@pytest.fixture
def client(monkeypatch):
    created = []

    async def fake_create_pipeline_run(db, event, config, repo_info, triggered_by=None):
        created.append({"event": event, "repo_info": repo_info, "triggered_by": triggered_by})
        return {"status": "queued", "run_id": "run-1", "steps": 5}

    monkeypatch.setattr(webhooks, "create_pipeline_run", fake_create_pipeline_run)
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", "")
    monkeypatch.setattr(webhooks.settings, "repository_full_name", "")
    app.dependency_overrides[get_pipeline_definition] = lambda: DEFINITION

    test_client = TestClient(app)
    test_client.created = created
    yield test_client

    app.dependency_overrides.clear()

def post_event(client, event, payload, headers=None):
    return client.post(
        "/api/webhooks/github",
        content=json.dumps(payload),
        headers={"X-GitHub-Event": event, "Content-Type": "application/json", **(headers or {})},
    )

def test_parse_push_payload():
    result = parse_webhook_payload(push_payload("refs/heads/main"))

    assert result["repo_name"] == "site"
    assert result["repo_full_name"] == "user/site"
    assert result["ref"] == "refs/heads/main"
    assert result["branch"] == "main"
    assert result["commit_sha"] == "abc123def456"
    assert result["pusher"] == "testuser"

def test_parse_payload_with_after():
    """Test fallback to 'after' field for commit SHA."""
    payload = push_payload("refs/heads/feature")
    payload["head_commit"] = {}
    payload["after"] = "xyz789"

    result = parse_webhook_payload(payload)
    assert result["commit_sha"] == "xyz789"
    assert result["branch"] == "feature"

def test_parse_payload_with_null_head_commit():
    payload = push_payload("refs/heads/main")
    payload["head_commit"] = None
    payload["pusher"] = None

    result = parse_webhook_payload(payload)
    assert result["commit_sha"] == "abc123def456"
    assert result["pusher"] == ""

def test_verify_signature_without_secret(monkeypatch):
    """When no secret is configured, verification should pass."""
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", "")
    assert verify_signature(b"payload", "sha256=anything") is True

def test_verify_signature_with_secret(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", "s3cret")
    body = b'{"ref": "refs/heads/main"}'
    good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    assert verify_signature(body, good) is True
    assert verify_signature(body, "sha256=" + "0" * 64) is False

def test_ping(client):
    response = post_event(client, "ping", {"zen": "hi"})
    assert response.json()["status"] == "pong"

def test_push_to_main_creates_run(client):
    response = post_event(client, "push", push_payload("refs/heads/main"))

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert len(client.created) == 1
    created = client.created[0]
    assert created["event"].branch == "main"
    assert created["repo_info"] == {
        "repository": "user/site",
        "clone_url": "https://github.com/user/site.git",
        "ref": "main",
        "commit_sha": "abc123def456",
    }
    assert created["triggered_by"] == "testuser"

def test_push_to_feature_branch_is_rejected(client):
    response = post_event(client, "push", push_payload("refs/heads/feature/x"))

    assert response.json()["status"] == "skipped"
    assert client.created == []

def test_tag_push_named_main_is_rejected(client):
    response = post_event(client, "push", push_payload("refs/tags/main"))

    assert response.json()["status"] == "skipped"
    assert client.created == []

def test_push_from_other_repository_is_ignored(client, monkeypatch):
    monkeypatch.setattr(webhooks.settings, "repository_full_name", "user/other")
    response = post_event(client, "push", push_payload("refs/heads/main"))

    assert response.json()["status"] == "skipped"
    assert client.created == []

def test_other_events_are_ignored(client):
    response = post_event(client, "pull_request", {"action": "opened"})

    assert response.json()["status"] == "ignored"
    assert client.created == []

def test_bad_signature_is_rejected(client, monkeypatch):
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", "s3cret")
    response = post_event(
        client, "push", push_payload("refs/heads/main"),
        headers={"X-Hub-Signature-256": "sha256=" + "0" * 64},
    )

    assert response.status_code == 401
    assert client.created == []

def test_missing_signature_is_rejected_when_secret_set(client, monkeypatch):
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", "s3cret")
    response = post_event(client, "push", push_payload("refs/heads/main"))

    assert response.status_code == 401
