# pyjobqueue/common/exceptions.py


class JobQueueError(Exception):
    """Base exception for the pyjobqueue library."""

    pass


class JobLoadError(JobQueueError):
    """Raised when a job's handler cannot be resolved."""

    pass


class ConfigurationError(JobQueueError):
    """Raised when a job definition or the job system settings are invalid."""

    pass


class ConditionError(JobQueueError):
    """Raised when a scheduled job's gating condition cannot be evaluated."""

    pass


class JobNotFoundError(JobQueueError):
    pass


class CacheError(JobQueueError):
    """Raised when the shared cache tier cannot complete an operation."""

    pass


class LockError(JobQueueError):
    pass


class LockOwnershipError(LockError):
    """Raised when an instance touches a lock recorded under another instance."""

    pass


class LockNotFoundError(LockError):
    pass


class WorkerPoolError(JobQueueError):
    pass


class SchedulerError(JobQueueError):
    pass
