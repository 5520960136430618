"""
Application Layer - use case orchestration.

Services here open units of work, enforce authorization and publish live
events after commit. They depend on domain interfaces; the concrete
storage, realtime and notification adapters are wired by factories.
"""

from .services import (
    AdmissionController,
    Admitted,
    Rejected,
    CompletionPipeline,
    CompletionReconciler,
    CrowdTestService,
    SessionService,
)
from .factories import Orchestrator, OrchestratorFactory

__all__ = [
    "AdmissionController",
    "Admitted",
    "Rejected",
    "CompletionPipeline",
    "CompletionReconciler",
    "CrowdTestService",
    "SessionService",
    "Orchestrator",
    "OrchestratorFactory",
]
