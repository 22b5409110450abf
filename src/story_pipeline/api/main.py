"""FastAPI application exposing run status and escalations."""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import escalations, runs


def create_app(project_path: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        project_path: Project directory holding .pipeline/

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Story Pipeline API",
        description="Run status and escalation management for the story pipeline",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store project path in app state
    app.state.project_path = Path(project_path) if project_path else None

    app.include_router(runs.router, prefix="/api", tags=["runs"])
    app.include_router(escalations.router, prefix="/api", tags=["escalations"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_server(project_path: Path, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(create_app(project_path), host=host, port=port)
