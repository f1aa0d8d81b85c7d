"""Unit tests for the FastAPI application.

The application starts through its lifespan with an in-memory store and
no GitHub token; collaborators that would call GitHub are replaced on the
module after startup.
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.connector import main
from src.connector.events.sources import EventSource
from src.connector.events.service import SubscriptionService
from src.connector.github.client import GitHubAPIError, RateLimitError
from src.connector.github.models import Page
from src.connector.subscriptions.manager import TransportError
from src.connector.subscriptions.models import RepositoryKey


ISSUE_OPENED = {
    "action": "opened",
    "issue": {"number": 7},
    "repository": {"name": "Hello-World", "owner": {"login": "octocat"}},
}


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("CONNECTOR_PUBLIC_URL", "https://connector.example.com")
    for name in [
        "CONNECTOR_GITHUB_TOKEN",
        "CONNECTOR_WEBHOOK_SECRET",
        "CONNECTOR_DATABASE_URL",
        "CONNECTOR_CALLBACK_URL",
        "CONNECTOR_EVENT_SOURCE",
    ]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def client(env):
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def source(client, monkeypatch):
    """Replace the event source with a mock and return it."""
    mock_source = MagicMock(spec=EventSource)
    mock_source.activate = AsyncMock()
    mock_source.deactivate = AsyncMock()
    mock_source.close = AsyncMock()
    monkeypatch.setattr(main, "service", SubscriptionService(main.dispatcher, mock_source))
    return mock_source


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_ready_requires_token(self, client):
        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["dependencies"] == {
            "database": "healthy",
            "github": "not_configured",
        }

    def test_status_and_configure(self, client):
        assert client.get("/status").json() == {"status": "Not configured"}

        response = client.post("/configure", json={"token": "ghp_runtime"})

        assert response.status_code == 200
        assert client.get("/status").json() == {"status": "Ready"}
        assert client.get("/ready").status_code == 200

    def test_configure_rejects_empty_token(self, client):
        assert client.post("/configure", json={"token": ""}).status_code == 422

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "connector_active_subscriptions" in response.text


class TestSubscriptions:

    def test_subscribe(self, client, source):
        response = client.put("/repos/octocat/Hello-World/subscriptions/issueClosed?resource_id=42")

        assert response.status_code == 200
        assert response.json() == {
            "status": "subscribed",
            "kind": "issueClosed",
            "repository": "octocat/Hello-World",
            "resource_id": 42,
        }
        source.activate.assert_awaited_once_with(
            RepositoryKey(owner="octocat", name="Hello-World"),
            "issues",
        )

    def test_list_subscriptions(self, client, source):
        client.put("/repos/octocat/Hello-World/subscriptions/push")

        body = client.get("/repos/octocat/Hello-World/subscriptions").json()

        assert body["subscriptions"] == [{"kind": "push", "resource_id": None}]
        assert body["webhook"] is None

    def test_unsubscribe(self, client, source):
        client.put("/repos/octocat/Hello-World/subscriptions/push")

        first = client.delete("/repos/octocat/Hello-World/subscriptions/push")
        second = client.delete("/repos/octocat/Hello-World/subscriptions/push")

        assert first.json()["status"] == "unsubscribed"
        assert second.json()["status"] == "not_subscribed"
        source.deactivate.assert_awaited_once()

    def test_unknown_kind(self, client, source):
        assert client.put("/repos/o/r/subscriptions/issueReopened").status_code == 422

    def test_scope_on_unscoped_kind(self, client, source):
        assert client.put("/repos/o/r/subscriptions/push?resource_id=3").status_code == 422

    def test_transport_error_is_bad_gateway(self, client, source):
        source.activate.side_effect = TransportError(
            RepositoryKey(owner="o", name="r"),
            "push",
            "create",
            GitHubAPIError("GitHub API error: 500", status_code=500),
        )

        response = client.put("/repos/o/r/subscriptions/push")

        assert response.status_code == 502
        assert response.json()["operation"] == "create"

    def test_rate_limited_webhook_call_is_too_many_requests(self, client, source):
        source.activate.side_effect = TransportError(
            RepositoryKey(owner="o", name="r"),
            "push",
            "list",
            RateLimitError(
                "GitHub API rate limit exceeded",
                reset_at=1700000000,
                retry_after=42,
                status_code=429,
            ),
        )

        response = client.put("/repos/o/r/subscriptions/push")

        assert response.status_code == 429
        assert response.headers["retry-after"] == "42"
        body = response.json()
        assert body["operation"] == "list"
        assert body["repository"] == "o/r"
        assert body["reset_at"] == 1700000000

    def test_without_token_is_unavailable(self, client):
        response = client.put("/repos/o/r/subscriptions/push")

        assert response.status_code == 503
        assert "not configured" in response.json()["detail"]


class TestCollections:

    def test_repository_collection(self, client, monkeypatch):
        github = MagicMock()
        github.close = AsyncMock()
        github.list_repository_collection = AsyncMock(
            return_value=Page(items=[{"number": 1}], next={"state": "open", "page": 2})
        )
        monkeypatch.setattr(main, "github_client", github)

        response = client.get("/repos/octocat/Hello-World/issues?state=open")

        assert response.status_code == 200
        assert response.json() == {
            "items": [{"number": 1}],
            "next": {"state": "open", "page": 2},
            "total_count": None,
        }
        github.list_repository_collection.assert_awaited_once_with(
            "octocat", "Hello-World", "issues", {"state": "open"}
        )

    def test_unknown_collection(self, client, monkeypatch):
        github = MagicMock()
        github.close = AsyncMock()
        github.list_repository_collection = AsyncMock(side_effect=KeyError("wikis"))
        monkeypatch.setattr(main, "github_client", github)

        assert client.get("/repos/o/r/wikis").status_code == 404

    def test_search_requires_query(self, client, monkeypatch):
        github = MagicMock()
        github.close = AsyncMock()
        github.search = AsyncMock(side_effect=ValueError("search requires a 'q' argument"))
        monkeypatch.setattr(main, "github_client", github)

        assert client.get("/search/issues").status_code == 422

    def test_upstream_error(self, client, monkeypatch):
        github = MagicMock()
        github.close = AsyncMock()
        github.list_user_repos = AsyncMock(side_effect=GitHubAPIError("GitHub API error: 404", status_code=404))
        monkeypatch.setattr(main, "github_client", github)

        response = client.get("/users/nobody/repos")

        assert response.status_code == 502
        assert response.json()["upstream_status"] == 404


class TestWebhooks:

    def test_delivery_dispatched(self, client, source):
        received = []

        async def listener(event):
            received.append(event)

        main.dispatcher.subscribe(
            main.Subscription(
                kind=main.EventKind.ISSUE_OPENED,
                repository=RepositoryKey(owner="octocat", name="Hello-World"),
            ),
            listener,
        )

        response = client.post(
            "/webhooks",
            content=json.dumps(ISSUE_OPENED),
            headers={"X-GitHub-Event": "issues", "X-GitHub-Delivery": "abc-123"},
        )

        assert response.json() == {
            "status": "accepted",
            "kind": "issueOpened",
            "repository": "octocat/Hello-World",
            "listeners": 1,
        }
        assert received[0].delivery_id == "abc-123"

    def test_ping_ignored(self, client):
        response = client.post(
            "/webhooks",
            content=json.dumps({"zen": "Design for failure.", "hook_id": 1}),
            headers={"X-GitHub-Event": "ping"},
        )
        assert response.json() == {"status": "ignored"}

    def test_invalid_json(self, client):
        assert client.post("/webhooks", content=b"{not json").status_code == 400

    def test_signature_enforced_when_secret_set(self, env):
        env.setenv("CONNECTOR_WEBHOOK_SECRET", "s3cret")
        body = json.dumps(ISSUE_OPENED).encode()
        signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        with TestClient(main.app) as client:
            rejected = client.post(
                "/webhooks",
                content=body,
                headers={"X-GitHub-Event": "issues", "X-Hub-Signature-256": "sha256=00"},
            )
            accepted = client.post(
                "/webhooks",
                content=body,
                headers={"X-GitHub-Event": "issues", "X-Hub-Signature-256": signature},
            )

        assert rejected.status_code == 401
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
