from vigil.models.alert import Alert
from vigil.models.binding import PlaybookBinding
from vigil.models.execution import (
    DispatchState,
    ExecutionStatus,
    PlaybookExecution,
    TriggerDispatch,
)
from vigil.models.incident import Incident
from vigil.models.playbook import Playbook, PlaybookStep, StepErrorPolicy
from vigil.models.threat_intel import ThreatIntel

__all__ = [
    "Alert",
    "DispatchState",
    "ExecutionStatus",
    "Incident",
    "Playbook",
    "PlaybookBinding",
    "PlaybookExecution",
    "PlaybookStep",
    "StepErrorPolicy",
    "ThreatIntel",
    "TriggerDispatch",
]
