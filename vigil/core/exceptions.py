"""Exception taxonomy for the correlation and triggering core."""


class VigilError(Exception):
    """Base class for all domain errors raised by vigil."""


class PredicateSyntaxError(VigilError):
    """Raised when a binding or step predicate does not parse.

    Surfaced at authoring time; never raised while matching events.
    """

    def __init__(self, message: str, predicate: str = "", position: int | None = None):
        self.message = message
        self.predicate = predicate
        self.position = position
        if position is not None:
            super().__init__(f"{message} (at position {position})")
        else:
            super().__init__(message)


class PredicateEvaluationError(VigilError):
    """Raised when a predicate references a field the event doesn't carry.

    Non-fatal: callers treat it as a non-match.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Field '{path}' is not present and has no default")


class ActionExecutionError(VigilError):
    """Raised when a playbook step's action fails."""

    def __init__(self, action: str, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"Action '{action}' failed: {reason}")


class ActionTimeoutError(ActionExecutionError):
    """Raised when an action exceeds its step deadline."""

    def __init__(self, action: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(action, f"timed out after {timeout_ms}ms")


class ActionNotFoundError(ActionExecutionError):
    """Raised when a step references an action missing from the registry."""

    def __init__(self, action: str):
        super().__init__(action, "action is not registered")


class PlaybookNotFoundError(VigilError):
    """Raised when a playbook job references a missing or inactive playbook."""

    def __init__(self, playbook_id: int):
        self.playbook_id = playbook_id
        super().__init__(f"Playbook {playbook_id} not found or inactive")


class DispatchError(VigilError):
    """Raised when a playbook job cannot be enqueued.

    The triggering event is left unacknowledged so redelivery retries it.
    """


class DedupConflict(VigilError):
    """Signals that an (event, binding) pair has already been processed."""

    def __init__(self, event_id: str, binding_id: int):
        self.event_id = event_id
        self.binding_id = binding_id
        super().__init__(f"Event {event_id} already dispatched for binding {binding_id}")
