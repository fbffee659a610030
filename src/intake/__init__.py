"""
Truck-accident intake agent.

Exports resolve lazily so pure modules such as `src.intake.extract` import
without pulling in the network stack (websockets, twilio, httpx).
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.intake.config import Config, get_config
    from src.intake.lead_types import LeadFields
    from src.intake.orchestrator import CallEvent, CallEventKind, CallOrchestrator, build_orchestrator
    from src.intake.session_store import SessionStore

_EXPORTS = {
    "Config": "src.intake.config",
    "get_config": "src.intake.config",
    "LeadFields": "src.intake.lead_types",
    "SessionStore": "src.intake.session_store",
    "CallEvent": "src.intake.orchestrator",
    "CallEventKind": "src.intake.orchestrator",
    "CallOrchestrator": "src.intake.orchestrator",
    "build_orchestrator": "src.intake.orchestrator",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(import_module(module), name)
