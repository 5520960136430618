"""Application services: admission, sessions, completion, test lifecycle."""

from .admission_controller import AdmissionController, AdmissionResult, Admitted, Rejected
from .completion_pipeline import CompletionOutcome, CompletionPipeline, CompletionReconciler
from .crowd_test_service import CrowdTestService, TestOverview
from .session_service import SessionService
from .access_policy import RoomAccessPolicy
from .transactions import TransactionRunner

__all__ = [
    # Admission
    "AdmissionController",
    "AdmissionResult",
    "Admitted",
    "Rejected",
    # Completion
    "CompletionOutcome",
    "CompletionPipeline",
    "CompletionReconciler",
    # Lifecycle
    "CrowdTestService",
    "TestOverview",
    "SessionService",
    # Support
    "RoomAccessPolicy",
    "TransactionRunner",
]
