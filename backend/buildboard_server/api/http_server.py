"""
HTTP server for Buildboard.

This module exposes the social services as a small JSON REST API.
Identity is taken from the X-Actor header; authentication happens in front
of this server.

Error responses:
    {"error": message, "error_code": code}
    - 400 validation failure (bad input, self request)
    - 404 unknown request, mark or build
    - 409 already friends, already liked, request not pending
    - 503 store failure, with "retryable": true
    - 500 anything else

Invariants:
    - Every route except /v1/health requires X-Actor
    - Handlers do not catch domain errors; the error middleware maps them

How to change safely:
    - Version the API if breaking changes are needed
    - Map new error classes in _status_for() before raising them from services
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from .._version import __version__
from ..config import HttpConfig
from ..errors import (
    AlreadyFriendsError,
    AlreadyLikedError,
    BuildboardError,
    NotFoundError,
    NotPendingError,
    TransientStoreError,
    ValidationError,
)
from ..social import (
    BuildService,
    EngagementService,
    LeaderboardService,
    Reconciler,
    RelationshipService,
)
from ..store import DocumentStore

logger = logging.getLogger(__name__)

_CONFLICT_ERRORS = (AlreadyFriendsError, AlreadyLikedError, NotPendingError)


@dataclass
class Services:
    """Everything the HTTP handlers call into."""

    documents: DocumentStore
    relationships: RelationshipService
    engagement: EngagementService
    builds: BuildService
    leaderboard: LeaderboardService
    reconciler: Reconciler


def _status_for(error: BuildboardError) -> int:
    if isinstance(error, _CONFLICT_ERRORS):
        return 409
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, TransientStoreError):
        return 503
    return 500


def create_http_app(services: Services, config: HttpConfig | None = None) -> web.Application:
    """Create the HTTP application.

    Args:
        services: Service instances backing the routes
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()

    def add_cors_headers(request: web.Request, headers: Any) -> None:
        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor"

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                add_cors_headers(request, e.headers)
                raise

        add_cors_headers(request, response.headers)
        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BuildboardError as e:
            status = _status_for(e)
            body: dict[str, Any] = {"error": e.message, "error_code": e.code}
            if isinstance(e, TransientStoreError):
                body["retryable"] = True
                logger.warning(
                    f"Store failure: {e.message}",
                    extra={"path": request.path, "method": request.method},
                )
            elif status == 500:
                logger.error(f"Unhandled domain error: {e.message}", exc_info=True)
            return web.json_response(body, status=status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app = web.Application(middlewares=[cors_middleware, error_middleware])

    app.router.add_post("/v1/friends/requests", lambda r: handle_send_request(r, services))
    app.router.add_get("/v1/friends/requests", lambda r: handle_list_pending(r, services))
    app.router.add_post(
        "/v1/friends/requests/{other}/accept", lambda r: handle_accept(r, services)
    )
    app.router.add_post(
        "/v1/friends/requests/{other}/decline", lambda r: handle_decline(r, services)
    )
    app.router.add_get("/v1/friends", lambda r: handle_list_friends(r, services))
    app.router.add_get("/v1/friends/builds", lambda r: handle_friends_builds(r, services))
    app.router.add_post("/v1/builds", lambda r: handle_create_build(r, services))
    # Registered before /v1/builds/{build_id}, which would match it too
    app.router.add_get("/v1/builds/public", lambda r: handle_public_builds(r, services))
    app.router.add_get("/v1/builds/{build_id}", lambda r: handle_get_build(r, services))
    app.router.add_post("/v1/builds/{build_id}/like", lambda r: handle_like(r, services))
    app.router.add_delete("/v1/builds/{build_id}/like", lambda r: handle_unlike(r, services))
    app.router.add_get(
        "/v1/builds/{build_id}/popularity", lambda r: handle_get_popularity(r, services)
    )
    app.router.add_put("/v1/leaderboard/me", lambda r: handle_update_score(r, services))
    app.router.add_get("/v1/leaderboard", lambda r: handle_get_leaderboard(r, services))
    app.router.add_get(
        "/v1/leaderboard/friends", lambda r: handle_friends_leaderboard(r, services)
    )
    app.router.add_post("/v1/admin/reconcile", lambda r: handle_reconcile(r, services))
    app.router.add_get("/v1/health", lambda r: handle_health(r, services))

    return app


def extract_actor(request: web.Request) -> str:
    """Get the calling member from the X-Actor header.

    Raises:
        web.HTTPBadRequest: If the header is missing
    """
    actor = request.headers.get("X-Actor")
    if not actor:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "X-Actor header is required", "error_code": "MISSING_ACTOR"}),
            content_type="application/json",
        )
    return actor


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body.

    Raises:
        ValidationError: If the body is not a JSON object
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body", code="INVALID_JSON")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object", code="INVALID_JSON")
    return body


def query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={name: raw})


async def handle_send_request(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/friends/requests - Send a friend request."""
    actor = extract_actor(request)
    body = await read_json(request)
    to_member = body.get("to")
    if not to_member:
        raise ValidationError("'to' is required", details={"to": to_member})

    record = await services.relationships.send_request(actor, to_member)
    return web.json_response(record.to_dict(), status=201)


async def handle_list_pending(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/friends/requests - List pending requests."""
    actor = extract_actor(request)
    records = await services.relationships.list_pending(actor)
    return web.json_response({"requests": [r.to_dict() for r in records]})


async def handle_accept(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/friends/requests/{other}/accept - Accept a request."""
    actor = extract_actor(request)
    other = request.match_info["other"]
    await services.relationships.accept(actor, other)
    return web.json_response({"status": "accepted", "friend": other})


async def handle_decline(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/friends/requests/{other}/decline - Decline a request."""
    actor = extract_actor(request)
    other = request.match_info["other"]
    await services.relationships.decline(actor, other)
    return web.json_response({"status": "declined", "counterpart": other})


async def handle_list_friends(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/friends - List friends."""
    actor = extract_actor(request)
    friends = await services.relationships.list_friends(actor)
    return web.json_response({"friends": friends})


async def handle_friends_builds(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/friends/builds - Public builds of the caller's friends."""
    actor = extract_actor(request)
    limit = query_int(request, "limit", 20)
    builds = await services.builds.list_friends_public_builds(actor, limit)
    return web.json_response({"builds": [b.to_dict() for b in builds]})


async def handle_create_build(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/builds - Create a build."""
    actor = extract_actor(request)
    body = await read_json(request)

    build = await services.builds.create_build(
        owner=actor,
        name=body.get("name", ""),
        category=body.get("category"),
        description=body.get("description"),
        is_public=bool(body.get("is_public", False)),
    )
    return web.json_response(build.to_dict(), status=201)


async def handle_public_builds(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/builds/public - Most liked public builds."""
    extract_actor(request)
    limit = query_int(request, "limit", 20)
    builds = await services.builds.list_public_builds(limit)
    return web.json_response({"builds": [b.to_dict() for b in builds]})


async def handle_get_build(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/builds/{build_id} - Get a build."""
    extract_actor(request)
    build = await services.builds.get_build(request.match_info["build_id"])
    return web.json_response(build.to_dict())


async def handle_like(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/builds/{build_id}/like - Like a build."""
    actor = extract_actor(request)
    build_id = request.match_info["build_id"]
    popularity = await services.engagement.like(build_id, actor)
    return web.json_response({"build_id": build_id, "liked": True, "popularity": popularity})


async def handle_unlike(request: web.Request, services: Services) -> web.Response:
    """Handle DELETE /v1/builds/{build_id}/like - Remove a like."""
    actor = extract_actor(request)
    build_id = request.match_info["build_id"]
    popularity = await services.engagement.unlike(build_id, actor)
    return web.json_response({"build_id": build_id, "liked": False, "popularity": popularity})


async def handle_get_popularity(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/builds/{build_id}/popularity - Get the like count."""
    actor = extract_actor(request)
    build_id = request.match_info["build_id"]
    popularity = await services.engagement.get_popularity(build_id)
    liked = await services.engagement.has_liked(build_id, actor)
    return web.json_response({"build_id": build_id, "popularity": popularity, "liked": liked})


async def handle_update_score(request: web.Request, services: Services) -> web.Response:
    """Handle PUT /v1/leaderboard/me - Record the caller's score."""
    actor = extract_actor(request)
    body = await read_json(request)
    entry = await services.leaderboard.update_score(
        actor, body.get("score"), body.get("streak", 0)
    )
    return web.json_response(entry.to_dict())


async def handle_get_leaderboard(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/leaderboard - Top scores."""
    extract_actor(request)
    limit = query_int(request, "limit", 50)
    entries = await services.leaderboard.get_leaderboard(limit)
    return web.json_response({"entries": [e.to_dict() for e in entries]})


async def handle_friends_leaderboard(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/leaderboard/friends - The caller and their friends, ranked."""
    actor = extract_actor(request)
    limit = query_int(request, "limit", 20)
    entries = await services.leaderboard.get_friends_leaderboard(actor, limit)
    return web.json_response(
        {"entries": [{"rank": i, **e.to_dict()} for i, e in enumerate(entries, start=1)]}
    )


async def handle_reconcile(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/admin/reconcile - Repair suspects and run a full sweep."""
    actor = extract_actor(request)
    logger.info("Manual reconcile requested", extra={"actor": actor})

    repaired = await services.reconciler.repair_suspects()
    report = await services.reconciler.sweep()
    result = report.to_dict()
    result["suspects_repaired"] = len(repaired)
    return web.json_response(result)


async def handle_health(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/health - Health check."""
    try:
        documents = await services.documents.get_stats()
    except TransientStoreError as e:
        return web.json_response(
            {"healthy": False, "version": __version__, "error": e.message}, status=503
        )

    return web.json_response(
        {
            "healthy": True,
            "version": __version__,
            "documents": documents["documents"],
            "reconciler": services.reconciler.stats,
        }
    )


async def start_http_server(
    services: Services,
    config: HttpConfig | None = None,
) -> web.AppRunner:
    """Start serving the HTTP API.

    Args:
        services: Service instances backing the routes
        config: HTTP server configuration

    Returns:
        The running AppRunner; call cleanup() on it to stop serving
    """
    config = config or HttpConfig()
    app = create_http_app(services, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")
    return runner
