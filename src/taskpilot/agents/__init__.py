"""Agent runtime: sessions, multi-action detection and completion enforcement."""

from .detector import Detection, PatternMultiActionDetector, StaticMultiActionDetector
from .enforcer import CompletionEnforcer
from .orchestrator import Orchestrator
from .session import SessionContext, SessionStore

__all__ = [
    "CompletionEnforcer",
    "Detection",
    "Orchestrator",
    "PatternMultiActionDetector",
    "SessionContext",
    "SessionStore",
    "StaticMultiActionDetector",
]
