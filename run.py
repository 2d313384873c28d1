"""
Entrypoint - Server Launcher
Serves the FastAPI app (HTTP operations + health) with uvicorn.
"""
import uvicorn

from workflow_vcs.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "workflow_vcs.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "warning",
        access_log=settings.debug
    )
