"""
Self-Healing Engine - Errors
============================

Error taxonomy for the engine. Each error maps onto a fixed outcome:

- ConfigurationError: rejected before gating, nothing is created
- GateBlocked: execution goes to ``blocked``
- TargetUnavailable: warning while other recipients remain, else ``failed``
- ExecutionTimeout: ``failed`` with partial changes preserved
- DeliveryFailure: ``failed``; the job runner retries the job
- ApprovalExpired / ApprovalExhausted: execution goes to ``blocked``
"""

from typing import Optional


class SelfHealingError(Exception):
    """Base class for engine errors."""
    pass


class ConfigurationError(SelfHealingError):
    """Action configuration is missing, malformed, or names an unknown kind."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class GateBlocked(SelfHealingError):
    """A blocking safety check failed."""

    def __init__(self, check_name: str, message: str):
        super().__init__(message)
        self.check_name = check_name


class TargetUnavailable(SelfHealingError):
    """No recipient could be resolved for an action target."""
    pass


class ExecutionTimeout(SelfHealingError):
    """An executor exceeded its time bound."""
    pass


class DeliveryFailure(SelfHealingError):
    """A delivery adapter or webhook failed at the I/O level."""
    pass


class ApprovalExpired(SelfHealingError):
    """Approval request passed its expiry before a decision."""
    pass


class ApprovalExhausted(SelfHealingError):
    """Every approver in the escalation chain was tried without a decision."""
    pass


class InvalidTransition(SelfHealingError):
    """Illegal move in the execution or approval state machine."""
    pass


class NotFoundError(SelfHealingError):
    """Referenced record does not exist."""
    pass


class PatternScanError(SelfHealingError):
    """The pattern store could not be queried; the whole scan fails."""
    pass


class RegistryFrozenError(SelfHealingError):
    """Executors can only be registered during startup."""
    pass
