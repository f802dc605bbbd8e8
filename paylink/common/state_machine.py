"""Transaction state machine enforced by the ledger."""

INITIALIZED = "initialized"
PROCESSING = "processing"
SUCCESS = "success"
FAILED = "failed"

TERMINAL_STATES: frozenset[str] = frozenset({SUCCESS, FAILED})
# Not yet settled; the repair path polls these.
OPEN_STATES: frozenset[str] = frozenset({INITIALIZED, PROCESSING})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INITIALIZED: {PROCESSING, SUCCESS, FAILED},
    PROCESSING: {SUCCESS, FAILED},
    SUCCESS: set(),
    FAILED: set(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
