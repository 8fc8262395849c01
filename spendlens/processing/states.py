"""Statement processing states and the transitions allowed between them.

    uploaded ──► processing ──► processed
                    │  ▲
                    ▼  │ (retry)
                   error

Only the pipeline moves a statement between states. A failed run is retried
by running the pipeline again, which re-enters processing from error.
"""

from __future__ import annotations

from spendlens.errors import InvalidTransitionError

UPLOADED = "uploaded"
PROCESSING = "processing"
PROCESSED = "processed"
ERROR = "error"

ALL_STATUSES = (UPLOADED, PROCESSING, PROCESSED, ERROR)

TRANSITIONS: dict[str, frozenset[str]] = {
    UPLOADED: frozenset({PROCESSING}),
    PROCESSING: frozenset({PROCESSED, ERROR}),
    PROCESSED: frozenset(),
    ERROR: frozenset({PROCESSING}),
}

# States a run may start from
RUNNABLE = tuple(s for s in ALL_STATUSES if PROCESSING in TRANSITIONS[s])


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
