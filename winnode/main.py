"""
Entry point for the Windows Node Installer API.

Run locally:
    uvicorn winnode.main:app --reload

Interactive docs available at:
    http://localhost:8000/docs  (Swagger UI)
    http://localhost:8000/redoc (ReDoc)
"""

import logging

from fastapi import FastAPI

from winnode.apis.auth import router as auth_router
from winnode.apis.windows_node import router as windows_node_router

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

# ── FastAPI app ───────────────────────────────────────────────────────────────
app = FastAPI(
    title="Windows Node Installer API",
    description=(
        "Provisions a Windows worker instance into an existing OpenShift cluster on AWS "
        "and tears it down again. All endpoints (except `/auth/token` and `/health`) "
        "require a valid JWT Bearer token."
    ),
    version="1.0.0",
    contact={"name": "Platform Engineering"},
    license_info={"name": "MIT"},
)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(auth_router)
app.include_router(windows_node_router)


# ── Health check ──────────────────────────────────────────────────────────────
@app.get("/health", tags=["Health"], summary="Health check")
def health() -> dict:
    """Returns 200 OK when the service is running."""
    return {"status": "ok"}
