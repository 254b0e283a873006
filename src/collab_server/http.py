"""HTTP endpoints using aiohttp."""

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from collab_server.errors import NotFoundError
from collab_server.models import Session, now_ms

if TYPE_CHECKING:
    from collab_server.server import WebSocketHandler

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render lookups that found nothing as a JSON 404."""
    try:
        return await handler(request)
    except NotFoundError as e:
        return web.json_response({"error": e.message}, status=404)


def _get_session(request: web.Request, error_message: str) -> Session:
    ws_handler: WebSocketHandler = request.app["ws_handler"]
    session = ws_handler.dispatcher.sessions.get(request.match_info["project_id"])
    if session is None:
        raise NotFoundError(error_message)
    return session


async def health_handler(request: web.Request) -> web.Response:
    """
    Health check endpoint.

    Returns server status, uptime, session count and active connection count.
    """
    ws_handler: WebSocketHandler = request.app["ws_handler"]

    return web.json_response(
        {
            "status": "OK",
            "timestamp": now_ms(),
            "uptime": ws_handler.uptime,
            "activeSessions": len(ws_handler.dispatcher.sessions),
            "connections": ws_handler.active_connection_count,
        }
    )


async def list_sessions_handler(request: web.Request) -> web.Response:
    """List every active session with its participant count."""
    ws_handler: WebSocketHandler = request.app["ws_handler"]
    sessions = [s.summary() for s in ws_handler.dispatcher.sessions.all()]

    return web.json_response({"sessions": sessions, "totalSessions": len(sessions)})


async def get_session_handler(request: web.Request) -> web.Response:
    """Return one session's participants, or 404 if the project has no session."""
    session = _get_session(request, "Session not found")

    participants = [
        {
            "connectionId": p.connection_id,
            "userName": p.user_name,
            "joinedAt": p.joined_at,
        }
        for p in session.participants.values()
    ]

    return web.json_response(
        {
            "projectId": session.project_id,
            "participants": participants,
            "participantCount": len(participants),
            "created": session.created,
        }
    )


async def project_stats_handler(request: web.Request) -> web.Response:
    """Per-participant activity durations for one project's session."""
    session = _get_session(request, "Project not found")

    now = now_ms()
    return web.json_response(
        {
            "projectId": session.project_id,
            "participantCount": session.participant_count,
            "sessionDuration": now - session.created,
            "participants": [
                {
                    "userName": p.user_name,
                    "joinedAt": p.joined_at,
                    "duration": now - p.joined_at,
                    "isAuthenticated": p.is_authenticated,
                }
                for p in session.participants.values()
            ],
            "created": session.created,
        }
    )


async def export_session_handler(request: web.Request) -> web.Response:
    """Snapshot of one session including participant profiles."""
    session = _get_session(request, "Project not found")

    return web.json_response(
        {
            "projectId": session.project_id,
            "created": session.created,
            "participants": [
                {
                    "userName": p.user_name,
                    "joinedAt": p.joined_at,
                    "isAuthenticated": p.is_authenticated,
                    "profile": p.profile,
                }
                for p in session.participants.values()
            ],
            "exportedAt": now_ms(),
        }
    )


async def user_activity_handler(request: web.Request) -> web.Response:
    """
    Activity per user name across every active session.

    A user in several projects, or in one project from several tabs, is
    counted once per participation, and the durations are summed.
    """
    ws_handler: WebSocketHandler = request.app["ws_handler"]

    now = now_ms()
    users: dict[str, dict] = {}
    for session in ws_handler.dispatcher.sessions.all():
        for p in session.participants.values():
            stats = users.setdefault(
                p.user_name,
                {
                    "userName": p.user_name,
                    "totalSessions": 0,
                    "totalTime": 0,
                    "projects": [],
                    "isAuthenticated": p.is_authenticated,
                },
            )
            stats["totalSessions"] += 1
            stats["totalTime"] += now - p.joined_at
            stats["projects"].append(session.project_id)

    return web.json_response(
        {"users": list(users.values()), "totalUsers": len(users), "timestamp": now}
    )


async def metrics_handler(request: web.Request) -> web.Response:
    """Server counters: uptime, active sessions and open connections."""
    ws_handler: WebSocketHandler = request.app["ws_handler"]

    return web.json_response(
        {
            "uptime": ws_handler.uptime,
            "sessions": len(ws_handler.dispatcher.sessions),
            "connections": ws_handler.active_connection_count,
            "timestamp": now_ms(),
        }
    )


def create_http_app(ws_handler: "WebSocketHandler") -> web.Application:
    """
    Create and configure the aiohttp application.

    Args:
        ws_handler: WebSocket handler instance for accessing server state.

    Returns:
        Configured aiohttp Application.
    """
    app = web.Application(middlewares=[error_middleware])

    # Store ws_handler in app for access in request handlers
    app["ws_handler"] = ws_handler

    # Register routes
    app.router.add_get("/health", health_handler)
    app.router.add_get("/api/sessions", list_sessions_handler)
    app.router.add_get("/api/sessions/{project_id}", get_session_handler)
    app.router.add_get("/api/sessions/{project_id}/export", export_session_handler)
    app.router.add_get("/api/projects/{project_id}/stats", project_stats_handler)
    app.router.add_get("/api/users/activity", user_activity_handler)
    app.router.add_get("/api/metrics", metrics_handler)

    logger.info(
        "HTTP routes registered: GET /health, GET /api/sessions, "
        "GET /api/sessions/{project_id}, GET /api/sessions/{project_id}/export, "
        "GET /api/projects/{project_id}/stats, GET /api/users/activity, GET /api/metrics"
    )

    return app
