"""Custom exception hierarchy for evocore."""


class EvocoreError(Exception):
    """Base for all coordination core errors."""


class DuplicateIdError(EvocoreError):
    """An agent with the given ID is already registered."""


class AgentNotFoundError(EvocoreError):
    """No agent with the given ID exists."""


class NoEligibleAgentError(EvocoreError):
    """No active or degraded agent offers the required capability."""


class TaskNotFoundError(EvocoreError):
    """No task with the given ID exists."""


class TaskStateError(EvocoreError):
    """Invalid task state transition."""


class DependencyNotSatisfiedError(EvocoreError):
    """A task was asked to execute before all its dependencies completed.

    Returned to the caller rather than raised.
    """

    def __init__(self, task_id: str, pending: list[str]):
        self.task_id = task_id
        self.pending = pending
        super().__init__(
            f"Task {task_id} has unfinished dependencies: {', '.join(pending)}"
        )


class DuplicateTriggerError(EvocoreError):
    """An equivalent trigger is already pending."""


class InvalidTriggerError(EvocoreError):
    """The trigger cannot be accepted from this source."""


class ProbeTimeoutError(EvocoreError):
    """A health probe did not answer in time. Never leaves the monitor."""


class QueueOverflowError(EvocoreError):
    """The trigger queue was full and a trigger was evicted. Logged, not raised."""
