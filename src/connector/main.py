"""FastAPI application entry point for the GitHub connector.

This module provides the HTTP surface of the connector:
- Subscribing to and unsubscribing from repository events
- Receiving GitHub webhook deliveries at /webhooks
- Fetching one page of a GitHub collection with the next page's arguments
- Health, readiness, status and Prometheus metrics endpoints
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field, ValidationError

from .config import ConnectorSettings, get_settings
from .events.dispatcher import EventDispatcher
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import ConnectorMetrics, generate_metrics_output, get_metrics
from .events.models import EventKind, Subscription
from .events.service import SubscriptionService
from .events.sources import create_event_source
from .github.client import GitHubAPIError, GitHubClient, NotConfiguredError, RateLimitError
from .subscriptions.manager import SubscriptionManager, TransportError
from .subscriptions.models import RepositoryKey
from .subscriptions.store import (
    DatabaseError,
    InMemorySubscriptionStore,
    PostgresSubscriptionStore,
)
from .webhook.handler import WebhookHandler
from .webhook.models import DeliveryHeaders

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[ConnectorSettings] = None
github_client: Optional[GitHubClient] = None
store: Any = None
manager: Optional[SubscriptionManager] = None
dispatcher: Optional[EventDispatcher] = None
service: Optional[SubscriptionService] = None
webhook_handler: Optional[WebhookHandler] = None
metrics: Optional[ConnectorMetrics] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact, or None.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if value is None:
        return "<not set>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: ConnectorSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Connector configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  Webhook Secret: {_redact_secret(settings.webhook_secret)}")
    logger.info(f"  Public URL: {settings.public_url}")
    logger.info(f"  Callback URL: {settings.webhook_callback_url}")
    logger.info(f"  Event Source: {settings.event_source}")
    logger.info(f"  Poll Interval Seconds: {settings.poll_interval_seconds}")
    logger.info(f"  Max Pages: {settings.max_pages}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


async def _create_store(cfg: ConnectorSettings):
    """Create the subscription store, connecting to PostgreSQL if configured."""
    if cfg.database_url is None:
        logger.warning(
            "CONNECTOR_DATABASE_URL not set, webhook records are kept in memory"
        )
        return InMemorySubscriptionStore()

    pg_store = PostgresSubscriptionStore(cfg.database_url)
    await pg_store.connect()
    return pg_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Wiring the GitHub client, store, manager, dispatcher and event source
    - Graceful shutdown and cleanup
    """
    global settings, github_client, store, manager, dispatcher, service
    global webhook_handler, metrics

    logger.info("GitHub connector starting up...")

    settings = get_settings()
    _log_configuration(settings)

    metrics = get_metrics()
    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
        max_pages=settings.max_pages,
    )
    store = await _create_store(settings)
    manager = SubscriptionManager(
        gateway=github_client,
        store=store,
        callback_url=settings.webhook_callback_url,
        webhook_secret=settings.webhook_secret,
        metrics=metrics,
    )
    webhook_handler = WebhookHandler(secret=settings.webhook_secret)
    dispatcher = EventDispatcher(
        emitter=create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS],
            metrics=metrics,
        ),
        metrics=metrics,
    )
    source = create_event_source(
        settings.event_source,
        manager=manager,
        client=github_client,
        handler=webhook_handler,
        dispatcher=dispatcher,
        poll_interval=settings.poll_interval_seconds,
    )
    service = SubscriptionService(dispatcher=dispatcher, source=source)

    logger.info("GitHub connector started successfully")

    yield

    logger.info("GitHub connector shutting down...")

    try:
        if service is not None:
            await service.close()
    finally:
        try:
            if isinstance(store, PostgresSubscriptionStore):
                await store.disconnect()
        finally:
            if github_client is not None:
                await github_client.close()

    logger.info("GitHub connector shutdown complete")


app = FastAPI(
    title="GitHub Connector",
    description="Repository event subscriptions and paginated collections for GitHub",
    version="1.0.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(NotConfiguredError)
async def not_configured_handler(request: Request, exc: NotConfiguredError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    logger.error(
        "Webhook operation failed: %s",
        str(exc),
        extra={
            "repository": exc.repository.full_name,
            "event": exc.event,
            "operation": exc.operation,
            "status_code": exc.status_code,
        },
    )
    content = {
        "detail": str(exc),
        "repository": exc.repository.full_name,
        "event": exc.event,
        "operation": exc.operation,
        "upstream_status": exc.status_code,
    }

    cause = exc.original_error
    if isinstance(cause, RateLimitError):
        headers = {}
        if cause.retry_after is not None:
            headers["Retry-After"] = str(cause.retry_after)
        content["reset_at"] = cause.reset_at
        return JSONResponse(status_code=429, content=content, headers=headers)

    return JSONResponse(status_code=502, content=content)


@app.exception_handler(RateLimitError)
async def rate_limit_handler(request: Request, exc: RateLimitError):
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=429,
        content={"detail": exc.message, "reset_at": exc.reset_at},
        headers=headers,
    )


@app.exception_handler(GitHubAPIError)
async def github_error_handler(request: Request, exc: GitHubAPIError):
    return JSONResponse(
        status_code=502,
        content={"detail": exc.message, "upstream_status": exc.status_code},
    )


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    return JSONResponse(status_code=503, content={"detail": exc.message})


def _require(component: Any, name: str) -> Any:
    if component is None:
        logger.error("Connector not initialized: %s missing", name)
        raise HTTPException(status_code=503, detail="Connector not initialized")
    return component


def _repository_key(owner: str, name: str) -> RepositoryKey:
    try:
        return RepositoryKey(owner=owner, name=name)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _subscription(
    owner: str,
    name: str,
    kind: EventKind,
    resource_id: Optional[int],
) -> Subscription:
    try:
        return Subscription(
            kind=kind,
            repository=_repository_key(owner, name),
            resource_id=resource_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


# -----------------------------------------------------------------------------
# Health and status
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Ready when the subscription store is reachable and a GitHub token is
    configured.

    Returns:
        dict: Status and dependency health information; 503 if not ready.
    """
    database_status = "unavailable"
    if store is not None and await store.health_check():
        database_status = "healthy"

    github_status = "configured"
    if github_client is None or not github_client.is_configured:
        github_status = "not_configured"

    is_ready = database_status == "healthy" and github_status == "configured"
    content = {
        "status": "ready" if is_ready else "not_ready",
        "dependencies": {
            "database": database_status,
            "github": github_status,
        },
    }
    return JSONResponse(status_code=200 if is_ready else 503, content=content)


@app.get("/status")
async def status():
    """Report whether the connector has GitHub credentials."""
    if github_client is not None and github_client.is_configured:
        return {"status": "Ready"}
    return {"status": "Not configured"}


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint.

    Returns:
        Prometheus-formatted metrics text.
    """
    return PlainTextResponse(
        content=generate_metrics_output(),
        media_type=CONTENT_TYPE_LATEST,
    )


class ConfigureRequest(BaseModel):
    """Body of POST /configure."""

    token: str = Field(..., min_length=1, description="GitHub API token")


@app.post("/configure")
async def configure(body: ConfigureRequest):
    """Replace the GitHub API token at runtime."""
    client = _require(github_client, "github_client")
    try:
        await client.configure(body.token)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "Ready"}


# -----------------------------------------------------------------------------
# Subscriptions
# -----------------------------------------------------------------------------


@app.put("/repos/{owner}/{name}/subscriptions/{kind}")
async def subscribe(
    owner: str,
    name: str,
    kind: EventKind,
    resource_id: Optional[int] = Query(default=None),
):
    """Subscribe to an event kind on a repository.

    Events are written to the connector's event sinks (logs, metrics).
    """
    subscription = _subscription(owner, name, kind, resource_id)
    await _require(service, "service").subscribe(subscription)
    return {
        "status": "subscribed",
        "kind": subscription.kind.value,
        "repository": subscription.repository.full_name,
        "resource_id": subscription.resource_id,
    }


@app.delete("/repos/{owner}/{name}/subscriptions/{kind}")
async def unsubscribe(
    owner: str,
    name: str,
    kind: EventKind,
    resource_id: Optional[int] = Query(default=None),
):
    """Remove a subscription created with PUT."""
    subscription = _subscription(owner, name, kind, resource_id)
    removed = await _require(service, "service").unsubscribe(subscription)
    return {
        "status": "unsubscribed" if removed else "not_subscribed",
        "kind": subscription.kind.value,
        "repository": subscription.repository.full_name,
        "resource_id": subscription.resource_id,
    }


@app.get("/repos/{owner}/{name}/subscriptions")
async def list_subscriptions(owner: str, name: str):
    """List a repository's subscriptions and its cached webhook record."""
    key = _repository_key(owner, name)
    active = _require(dispatcher, "dispatcher").subscriptions(key)
    record = await _require(manager, "manager").get_record(key)

    return {
        "repository": key.full_name,
        "subscriptions": [
            {"kind": sub.kind.value, "resource_id": sub.resource_id}
            for sub in active
        ],
        "webhook": (
            {"id": record.id, "url": record.url, "events": record.sorted_events()}
            if record is not None
            else None
        ),
    }


# -----------------------------------------------------------------------------
# Collections
# -----------------------------------------------------------------------------


def _query_args(request: Request) -> Dict[str, Any]:
    return dict(request.query_params)


@app.get("/users/{owner}/repos")
async def list_user_repos(owner: str, request: Request):
    """One page of a user's repositories."""
    client = _require(github_client, "github_client")
    page = await client.list_user_repos(owner, _query_args(request))
    return page.model_dump()


@app.get("/search/{kind}")
async def search(kind: str, request: Request):
    """One page of search results (repositories, issues, commits)."""
    client = _require(github_client, "github_client")
    try:
        page = await client.search(kind, _query_args(request))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown search kind: {kind}")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return page.model_dump()


@app.get("/repos/{owner}/{name}/{collection}")
async def list_repository_collection(
    owner: str,
    name: str,
    collection: str,
    request: Request,
):
    """One page of a repository collection (issues, pulls, commits, ...)."""
    client = _require(github_client, "github_client")
    key = _repository_key(owner, name)
    try:
        page = await client.list_repository_collection(
            key.owner,
            key.name,
            collection,
            _query_args(request),
        )
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
    return page.model_dump()


# -----------------------------------------------------------------------------
# Webhook deliveries
# -----------------------------------------------------------------------------


@app.post("/webhooks")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    Verifies the delivery signature when a webhook secret is configured,
    classifies the payload and dispatches the resulting event.

    Returns:
        dict: Acknowledgment of webhook receipt.
    """
    handler = _require(webhook_handler, "webhook_handler")
    event_dispatcher = _require(dispatcher, "dispatcher")

    body = await request.body()
    headers = DeliveryHeaders(
        event_name=request.headers.get("x-github-event"),
        delivery_id=request.headers.get("x-github-delivery"),
        signature=request.headers.get("x-hub-signature-256"),
    )

    if not handler.verify_signature(body, headers.signature):
        logger.warning(
            "Rejected webhook delivery with invalid signature",
            extra={"delivery_id": headers.delivery_id},
        )
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    event = handler.classify(payload, headers)
    if event is None:
        return {"status": "ignored"}

    delivered = await event_dispatcher.emit(event)
    return {
        "status": "accepted",
        "kind": event.kind.value,
        "repository": event.repository.full_name,
        "listeners": delivered,
    }


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.connector.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
