"""SD.cpp Backend Status API.

Read-only FastAPI endpoints a host UI polls for backend state, the
model list, effective settings and installed engine builds.
"""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..backend import BACKEND_ID, BACKEND_NAME, SDcppBackend, get_backend
from ..errors import SDcppError

API_VERSION = "1.0.0"

# ============================================================================
# Models
# ============================================================================

class StatusResponse(BaseModel):
    id: str
    name: str
    status: str
    message: str = ""
    device: str
    executable: Optional[str] = None
    current_model: Optional[str] = None
    architecture: Optional[str] = None
    features: List[str] = []

class ModelEntry(BaseModel):
    name: str
    title: str
    path: str
    architecture: str
    type: str

class InstallationEntry(BaseModel):
    tag: str
    device: str
    executable: str
    installed_at: float
    last_update_check_at: float
    etag: Optional[str] = None
    asset: Optional[str] = None

# ============================================================================
# App
# ============================================================================

def create_app(backend: Optional[SDcppBackend] = None) -> FastAPI:
    """Build the API around ``backend`` (the global backend by default)."""
    app = FastAPI(
        title="SD.cpp Backend API",
        description=f"Status API for the {BACKEND_NAME} backend",
        version=API_VERSION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def current() -> SDcppBackend:
        return backend if backend is not None else get_backend()

    @app.get(f"/api/{BACKEND_ID}/status", response_model=StatusResponse)
    async def get_status():
        """Backend status and the selected model."""
        return StatusResponse(**current().info())

    @app.get(f"/api/{BACKEND_ID}/models", response_model=List[ModelEntry])
    async def list_models():
        """Models found under the models root."""
        try:
            return [ModelEntry(**m) for m in current().list_models()]
        except (SDcppError, OSError) as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.get(f"/api/{BACKEND_ID}/settings")
    async def get_settings() -> Dict[str, Any]:
        """Effective configuration."""
        return current().config.model_dump(mode="json")

    @app.get(f"/api/{BACKEND_ID}/installations", response_model=List[InstallationEntry])
    async def list_installations():
        """Installed engine builds, one per device."""
        try:
            return [InstallationEntry(**i.to_dict()) for i in current().installed_versions()]
        except OSError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "backend": current().status.value, "version": API_VERSION}

    return app


app = create_app()
