"""
FastAPI dependency for LifecycleOrchestrator injection.

Routes declare `orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)`.
The orchestrator is built on first use (reading the cluster's Infrastructure
object and creating boto3 clients), so importing the app needs neither a
reachable cluster nor AWS credentials.

Tests override this one dependency:

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator_with_fakes
"""

from functools import lru_cache

from winnode.services.lifecycle import LifecycleOrchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> LifecycleOrchestrator:
    """Return the process-wide orchestrator configured from settings."""
    return LifecycleOrchestrator.from_settings()
