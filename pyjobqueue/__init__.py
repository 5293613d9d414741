from .cache import Cache, MemoryCache, NullCache, RedisCache
from .client import IntegrationJobCreator, JobClient
from .common.exceptions import JobQueueError
from .common.job import Job, JobHistory, JobMetadata, QueueJob
from .common.states import JobDirection, JobStatus, JobType
from .common.triggers import CronTrigger, IntervalTrigger, parse_schedule
from .config import JobsConfig
from .execution.performer import Executor, HandlerRegistry
from .server.queue_manager import DistributedQueueManager
from .server.scheduler import JobScheduler, ScheduleEngine
from .server.system import JobSystem
from .server.worker import JobWorkerPool
from .storage import JobStore, MemoryJobStore, SqlJobStore

__all__ = [
    "Cache",
    "CronTrigger",
    "DistributedQueueManager",
    "Executor",
    "HandlerRegistry",
    "IntegrationJobCreator",
    "IntervalTrigger",
    "Job",
    "JobClient",
    "JobDirection",
    "JobHistory",
    "JobMetadata",
    "JobQueueError",
    "JobScheduler",
    "JobStatus",
    "JobStore",
    "JobSystem",
    "JobType",
    "JobWorkerPool",
    "JobsConfig",
    "MemoryCache",
    "MemoryJobStore",
    "NullCache",
    "QueueJob",
    "RedisCache",
    "ScheduleEngine",
    "SqlJobStore",
    "parse_schedule",
]
