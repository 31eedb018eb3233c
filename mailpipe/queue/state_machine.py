"""
Queue item lifecycle.

    AWAITING_GENERATION -> PENDING_REVIEW | AWAITING_GENERATION (retry) | GENERATION_FAILED
    PENDING_REVIEW      -> SCHEDULED | REJECTED
    SCHEDULED           -> SENT | SEND_FAILED

SENT, REJECTED and GENERATION_FAILED are terminal. GENERATION_FAILED and
SEND_FAILED can be re-opened only through the operator override path.
"""
from mailpipe.exceptions import InvalidTransition
from mailpipe.models import QueueStatus

TRANSITIONS = {
    QueueStatus.AWAITING_GENERATION: frozenset({
        QueueStatus.PENDING_REVIEW,
        QueueStatus.AWAITING_GENERATION,
        QueueStatus.GENERATION_FAILED,
    }),
    QueueStatus.PENDING_REVIEW: frozenset({QueueStatus.SCHEDULED, QueueStatus.REJECTED}),
    QueueStatus.SCHEDULED: frozenset({QueueStatus.SENT, QueueStatus.SEND_FAILED}),
    QueueStatus.SENT: frozenset(),
    QueueStatus.REJECTED: frozenset(),
    QueueStatus.GENERATION_FAILED: frozenset(),
    QueueStatus.SEND_FAILED: frozenset(),
}

OVERRIDE_TRANSITIONS = {
    QueueStatus.GENERATION_FAILED: frozenset({QueueStatus.AWAITING_GENERATION}),
    QueueStatus.SEND_FAILED: frozenset({QueueStatus.SCHEDULED}),
}

TERMINAL_STATUSES = frozenset({
    QueueStatus.SENT,
    QueueStatus.REJECTED,
    QueueStatus.GENERATION_FAILED,
})


def _as_status(value):
    if isinstance(value, QueueStatus):
        return value
    try:
        return QueueStatus(value)
    except ValueError:
        raise InvalidTransition(str(value), "?") from None


def is_terminal(status):
    return _as_status(status) in TERMINAL_STATUSES


def allowed_targets(current, override=False):
    """Statuses reachable from `current` in one step."""
    current = _as_status(current)
    targets = set(TRANSITIONS.get(current, ()))
    if override:
        targets |= OVERRIDE_TRANSITIONS.get(current, frozenset())
    return targets


def check_transition(current, target, override=False):
    """
    Validate a status change.

    Args:
        current: Status the item is in now
        target: Requested status
        override: Allow the operator re-open paths

    Returns:
        QueueStatus: The validated target status

    Raises:
        InvalidTransition: If the change is not allowed
    """
    current = _as_status(current)
    try:
        target = QueueStatus(target) if not isinstance(target, QueueStatus) else target
    except ValueError:
        raise InvalidTransition(current.value, str(target)) from None

    if target not in allowed_targets(current, override=override):
        raise InvalidTransition(current.value, target.value)
    return target
