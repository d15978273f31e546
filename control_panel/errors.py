"""Domain errors raised by the producer, consumer and policy layers.

The HTTP layer maps each of these to a status code; nothing below the API
swallows them.
"""


class ControlPanelError(Exception):
    status_code = 400


class NotAuthorized(ControlPanelError):
    """A policy predicate rejected the acting user or device."""

    status_code = 403


class ValidationError(ControlPanelError):
    """Malformed input: empty name, malformed address, unknown command kind."""

    status_code = 422


class InvalidPort(ValidationError):
    def __init__(self, port):
        super().__init__(f"port must be within 1..65535, got {port}")
        self.port = port


class InvalidTransition(ControlPanelError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"cannot move command from {current} to {requested}")
        self.current = current
        self.requested = requested


class NotFound(ControlPanelError):
    status_code = 404

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident
