"""
Domain exceptions raised by the automation services.
Routers translate these into HTTP responses.
"""


class AutopilotError(Exception):
    """Base class for automation core errors."""
    pass


class ConfigurationError(AutopilotError):
    """Invalid rule or playbook configuration. Rejected before anything is evaluated."""
    pass


class NotFoundError(AutopilotError):
    pass


class ConflictError(AutopilotError):
    """The requested operation conflicts with the current state (e.g. running a disabled rule)."""
    pass


class InvalidTransitionError(ConflictError):
    """A queue item is not in a state that allows the requested transition."""

    def __init__(self, item_id, current_status: str | None, target_status: str):
        self.item_id = item_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Action {item_id} cannot move from {current_status or 'unknown'} to {target_status}"
        )


class CredentialError(AutopilotError):
    """No usable Amazon Ads credential for a profile."""
    pass
