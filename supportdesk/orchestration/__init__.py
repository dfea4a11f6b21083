"""
Orchestration Package

Turn orchestration for the support desk:
- Intent routing with a keyword fallback
- Specialist dispatch over the bound tool subsets
- Context window management and compaction
- Ordered, cancellable turn event streams
"""

from .context import ContextManager, SUMMARY_PREFIX
from .dispatch import SpecialistDispatcher
from .emitter import CancellationToken, ConversationLocks, EventEmitter, TurnStream
from .orchestrator import Orchestrator
from .router import IntentRouter, KeywordClassifier, extract_entities
from .session import OrchestrationSession, TurnRequest, TurnState
from .specialists import (
    BaseSpecialist,
    BillingSpecialist,
    OrderSpecialist,
    SpecialistRequest,
    SupportSpecialist,
    ToolOutcome,
    UnresolvedSpecialist,
    build_specialists,
)

__all__ = [
    # Core
    "Orchestrator",
    "OrchestrationSession",
    "TurnRequest",
    "TurnState",
    # Routing
    "IntentRouter",
    "KeywordClassifier",
    "extract_entities",
    # Specialists
    "BaseSpecialist",
    "BillingSpecialist",
    "OrderSpecialist",
    "SupportSpecialist",
    "UnresolvedSpecialist",
    "SpecialistDispatcher",
    "SpecialistRequest",
    "ToolOutcome",
    "build_specialists",
    # Context
    "ContextManager",
    "SUMMARY_PREFIX",
    # Streaming
    "CancellationToken",
    "ConversationLocks",
    "EventEmitter",
    "TurnStream",
]
