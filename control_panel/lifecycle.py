"""Command lifecycle: pending -> delivered -> executed, with failed reachable
from either non-terminal state. Terminal states have no outgoing edges."""

from .errors import InvalidTransition
from .models import CommandStatus

TRANSITIONS: dict[CommandStatus, frozenset[CommandStatus]] = {
    CommandStatus.pending: frozenset({CommandStatus.delivered, CommandStatus.failed}),
    CommandStatus.delivered: frozenset({CommandStatus.executed, CommandStatus.failed}),
    CommandStatus.executed: frozenset(),
    CommandStatus.failed: frozenset(),
}

def can_transition(current: str, new: str) -> bool:
    try:
        return CommandStatus(new) in TRANSITIONS[CommandStatus(current)]
    except ValueError:
        return False


def check_transition(current: str, new: str) -> CommandStatus:
    if not can_transition(current, new):
        raise InvalidTransition(current, new)
    return CommandStatus(new)
