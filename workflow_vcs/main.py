"""
Main Application Gateway
Exposes the workflow version-control tools via FastMCP with FastAPI integration.
"""
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastmcp import FastMCP

from workflow_vcs.core.config import settings
from workflow_vcs.core.client import get_client
from workflow_vcs.core.dispatcher import (
    dispatch,
    get_skill_manifest,
    merge_workflow_changes,
    track_workflow_changes,
)
from workflow_vcs.core.errors import WorkflowVCSError
from workflow_vcs.core.logging import gateway_logger as logger

# Import all service functions
from workflow_vcs.services.tracking import (
    get_version_history,
    compare_versions,
    create_snapshot,
    restore_version,
    track_changes
)
from workflow_vcs.services.branching import (
    create_branch,
    list_branches,
    preview_merge,
    merge_branches,
    resolve_conflicts,
    abandon_branch
)

VERSION = "1.0.0"


# =============================================================================
# LIFESPAN MANAGER
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages the application lifecycle.
    - Startup: Log configuration
    - Shutdown: Close HTTP client
    """
    logger.info("=" * 60)
    logger.info("n8n Workflow VCS Server Starting")
    logger.info(f"n8n API: {settings.n8n_base_url}")
    logger.info(f"Version store: {settings.store_backend}")
    logger.info(f"Default branch: {settings.default_branch}")
    logger.info("=" * 60)

    yield

    # Cleanup
    client = get_client()
    await client.close()
    logger.info("n8n Workflow VCS Server Shutdown")


# =============================================================================
# FASTAPI APP INITIALIZATION
# =============================================================================
app = FastAPI(
    title="n8n Workflow VCS API",
    description="Version control, branching and three-way merge for n8n workflows.",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# GLOBAL EXCEPTION HANDLER
# =============================================================================
@app.exception_handler(WorkflowVCSError)
async def vcs_exception_handler(request: Request, exc: WorkflowVCSError):
    return JSONResponse(status_code=exc.code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches any unhandled error and returns it in envelope format.
    Callers never receive a raw traceback.
    """
    logger.error(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "status": "error",
            "code": 500,
            "error_type": "internal_error",
            "message": str(exc),
            "path": str(request.url.path)
        }
    )


# =============================================================================
# HEALTH & INFO ENDPOINTS
# =============================================================================
@app.get("/health")
async def health_check():
    """Check server and n8n connectivity status."""
    try:
        client = get_client()
        await client.get("/workflows", params={"limit": 1})
        n8n_status = "connected"
    except WorkflowVCSError as e:
        n8n_status = f"error: {e.message[:50]}"

    return {
        "status": "healthy",
        "n8n_connection": n8n_status,
        "version": VERSION
    }


@app.get("/info")
async def server_info():
    """Get server configuration info."""
    return {
        "name": "n8n Workflow VCS",
        "version": VERSION,
        "n8n_base_url": settings.n8n_base_url,
        "n8n_editor_url": settings.n8n_editor_url,
        "store_backend": settings.store_backend,
        "default_branch": settings.default_branch,
        "push_to_engine": settings.push_to_engine
    }


# =============================================================================
# OPERATION ENDPOINTS
# =============================================================================
@app.get("/operations")
async def list_operations():
    """Manifest of every operation accepted by POST /operations/{operation}."""
    return get_skill_manifest()


@app.post("/operations/{operation}")
async def run_operation(operation: str, params: Optional[Dict[str, Any]] = Body(default=None)):
    """Run one operation. Failures keep their error code; a blocked merge is 409."""
    payload = json.loads(await dispatch(operation, params))
    status_code = 200
    if isinstance(payload, dict) and not payload.get("success", True):
        status_code = payload.get("code", 409)
    return JSONResponse(status_code=status_code, content=payload)


# =============================================================================
# FASTMCP SERVER INITIALIZATION
# =============================================================================
mcp = FastMCP("n8n Workflow VCS")

# --- Register Change Tracking Tools ---
mcp.tool()(get_version_history)
mcp.tool()(compare_versions)
mcp.tool()(create_snapshot)
mcp.tool()(restore_version)
mcp.tool()(track_changes)

# --- Register Branching & Merge Tools ---
mcp.tool()(create_branch)
mcp.tool()(list_branches)
mcp.tool()(preview_merge)
mcp.tool()(merge_branches)
mcp.tool()(resolve_conflicts)
mcp.tool()(abandon_branch)

# --- Register Umbrella Tools ---
mcp.tool()(track_workflow_changes)
mcp.tool()(merge_workflow_changes)


def get_mcp() -> FastMCP:
    """Get the FastMCP server instance."""
    return mcp


def get_app() -> FastAPI:
    """Get the FastAPI app instance."""
    return app


if __name__ == "__main__":
    mcp.run()
