from __future__ import annotations

from typing import List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..domain.errors import SlotBusy
from ..logging import get_logger
from ..orchestrator.flow import RefundAgent, build_agent_config
from ..paths import find_project_root


LOG = get_logger("api-app")


def create_app(
    agent: Optional[RefundAgent] = None,
    *,
    root_dir: Optional[str] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the query endpoint."""

    if agent is None:
        agent = RefundAgent.from_config(build_agent_config(find_project_root(root_dir)))

    async def health(_: Request) -> JSONResponse:
        current = agent.slot.current
        return JSONResponse({"status": "ok", "busy": current is not None, "operation": current.name if current else None})

    async def query(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            body = None
        text = body.get("query") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            return JSONResponse({"error": "Query is required", "success": False}, status_code=400)

        LOG.info("POST /api/query: %r", text[:200])
        try:
            result = await run_in_threadpool(agent.handle, text.strip())
        except SlotBusy as exc:
            LOG.warning("Rejected query while busy: %s", exc)
            return JSONResponse(
                {"error": str(exc), "success": False, "operation": exc.current}, status_code=409
            )
        except Exception as exc:
            LOG.exception("Query failed")
            return JSONResponse({"error": str(exc), "success": False}, status_code=500)
        return JSONResponse(result)

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/query", query, methods=["POST"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:3000", "http://127.0.0.1:3000"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app
