"""Dispute domain: lifecycle state machine, mutual closure and orchestration."""

from .config import DisputeConfig, MutualClosureConfig, default_config
from .models import (
    ARBITRATION_ACTOR,
    PROCESSOR_ACTOR,
    SYSTEM_ACTOR,
    CreateDisputeRequest,
    Dispute,
    DisputeStatus,
    ExternalDisputeWebhook,
    MutualClosureStatus,
    MutualDisputeClosure,
    Resolution,
    ResolutionKind,
)
from .mutual_closure import MutualClosureWorkflow
from .orchestrator import DisputeOrchestrator
from .state_machine import DisputeStateMachine
from .webhooks import apply_webhook

__all__ = [
    "ARBITRATION_ACTOR",
    "PROCESSOR_ACTOR",
    "SYSTEM_ACTOR",
    "CreateDisputeRequest",
    "Dispute",
    "DisputeConfig",
    "DisputeOrchestrator",
    "DisputeStateMachine",
    "DisputeStatus",
    "ExternalDisputeWebhook",
    "MutualClosureConfig",
    "MutualClosureStatus",
    "MutualClosureWorkflow",
    "MutualDisputeClosure",
    "Resolution",
    "ResolutionKind",
    "apply_webhook",
    "default_config",
]
