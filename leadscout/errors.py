"""Exception hierarchy for the discovery engine."""
from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all discovery engine errors."""


# ---------------------------------------------------------------------------
# Run preconditions
# ---------------------------------------------------------------------------


class RunnerDisabled(DiscoveryError):
    """The kill switch is off; no run may start."""

    def __init__(self, message: str = "Discovery runner is disabled. Set DISCOVERY_RUNNER_ENABLED=true to enable."):
        super().__init__(message)


class IntentNotFound(DiscoveryError):
    def __init__(self, intent_id: str):
        super().__init__(f"Intent {intent_id!r} not found")
        self.intent_id = intent_id


class IntentInactive(DiscoveryError):
    def __init__(self, intent_id: str):
        super().__init__(f"Intent {intent_id!r} is not active")
        self.intent_id = intent_id


# ---------------------------------------------------------------------------
# Lifecycle preconditions
# ---------------------------------------------------------------------------


class LifecycleError(DiscoveryError):
    """A lifecycle action was rejected before any state was changed."""

    def __init__(self, run_id: str, message: str):
        super().__init__(message)
        self.run_id = run_id


class RunNotFound(LifecycleError):
    def __init__(self, run_id: str):
        super().__init__(run_id, f"Discovery run {run_id} not found")


class RunNotTerminal(LifecycleError):
    def __init__(self, run_id: str, status: str):
        super().__init__(run_id, f"Run {run_id} is still {status}; wait for it to finish")
        self.status = status


class RunNotArchived(LifecycleError):
    def __init__(self, run_id: str):
        super().__init__(run_id, f"Run {run_id} must be archived before it can be deleted")


class NotADryRun(LifecycleError):
    def __init__(self, run_id: str):
        super().__init__(run_id, f"Run {run_id} is not a dry run. Only dry runs can be materialized.")


class EmptyResults(LifecycleError):
    def __init__(self, run_id: str):
        super().__init__(run_id, f"Run {run_id} has no results to materialize")


class CancelNotAllowed(LifecycleError):
    pass


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class ChannelError(DiscoveryError):
    """A discovery channel failed (bad response, quota, auth)."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ChannelNotConfigured(ChannelError):
    pass


class InvalidTransition(DiscoveryError):
    """A status change would break status monotonicity."""

    def __init__(self, run_id: str, current: str, target: str):
        super().__init__(f"Run {run_id} cannot move from {current} to {target}")
        self.run_id = run_id
        self.current = current
        self.target = target
