from mailpipe.queue.state_machine import (
    OVERRIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    allowed_targets,
    check_transition,
    is_terminal,
)
