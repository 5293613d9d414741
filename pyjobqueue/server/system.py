# pyjobqueue/server/system.py
import logging
import threading
from typing import Any, Dict, Optional

from pyjobqueue.cache.base import Cache
from pyjobqueue.cache.null_cache import NullCache
from pyjobqueue.client import IntegrationJobCreator, JobClient
from pyjobqueue.common.exceptions import CacheError, ConfigurationError
from pyjobqueue.config import JobsConfig
from pyjobqueue.execution.performer import Executor, HandlerRegistry
from pyjobqueue.serialization.base import BaseSerializer
from pyjobqueue.serialization.json_serializer import JsonSerializer
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.server.scheduler import JobScheduler
from pyjobqueue.server.worker import JobWorkerPool
from pyjobqueue.storage.base import JobStore

logger = logging.getLogger(__name__)


class JobSystem:
    """
    Wires the queue manager, worker pool, scheduler and producers together
    for one process. Hosts create one and pass it where it is needed.
    """

    def __init__(
        self,
        config: JobsConfig,
        store: JobStore,
        cache: Optional[Cache] = None,
        executor: Optional[Executor] = None,
        serializer: Optional[BaseSerializer] = None,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        self.executor = executor or HandlerRegistry()
        self.serializer = serializer or JsonSerializer()

        self.queue_manager: Optional[DistributedQueueManager] = None
        self.worker_pool: Optional[JobWorkerPool] = None
        self.scheduler: Optional[JobScheduler] = None
        self.client: Optional[JobClient] = None
        self.job_creator: Optional[IntegrationJobCreator] = None

        self._running = False
        self._lock = threading.Lock()
        self._build(cache)

    @classmethod
    def from_config(cls, config: JobsConfig, executor: Optional[Executor] = None) -> "JobSystem":
        if not config.database_url:
            raise ConfigurationError("database_url is required to build a job store")
        from pyjobqueue.storage import SqlJobStore

        if SqlJobStore is None:
            raise ConfigurationError("SQL job store requires 'sqlalchemy'. Install pyjobqueue[sql].")
        store = SqlJobStore(connection_url=config.database_url)

        cache = None
        if config.use_redis:
            from pyjobqueue.cache.redis_cache import RedisCache

            cache = RedisCache(url=config.redis_url)
        return cls(config, store, cache=cache, executor=executor)

    def _build(self, cache: Optional[Cache]) -> None:
        self.queue_manager = DistributedQueueManager(
            cache=cache,
            instance_id=self.config.instance_name or None,
            lock_timeout=self.config.lock_timeout,
        )
        self.worker_pool = JobWorkerPool(
            self.store,
            self.queue_manager,
            self.executor,
            config=self.config,
            serializer=self.serializer,
            worker_id=self.queue_manager.instance_id,
        )
        self.scheduler = JobScheduler(self.store, self.queue_manager, config=self.config)
        self.client = JobClient(
            self.store,
            self.queue_manager,
            serializer=self.serializer,
            default_max_retries=self.config.max_retries,
        )
        self.job_creator = IntegrationJobCreator(self.client)

    def start(self) -> None:
        with self._lock:
            if not self.config.enabled:
                logger.info("Job system disabled by configuration")
                return
            if self._running:
                logger.debug("Job system already running")
                return

            self.config.validate()
            cache = self.cache
            if cache is not None and cache.shared:
                probe = DistributedQueueManager(cache=cache)
                try:
                    probe.health_check()
                except CacheError as e:
                    logger.warning(f"Cache health check failed, running without distribution: {e}")
                    cache = NullCache()
            else:
                logger.warning("No shared cache configured, running in single-instance mode")
            self._build(cache)

            self.worker_pool.start()
            self.scheduler.start()
            self._running = True
        logger.info(
            f"Job system started (instance {self.queue_manager.instance_id}, "
            f"distributed={self.queue_manager.distributed})"
        )

    def shutdown(self) -> None:
        with self._lock:
            if not self._running:
                return
            try:
                self.scheduler.stop()
            finally:
                self.worker_pool.stop()
                self._running = False
        logger.info("Job system stopped")

    def is_running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "running": self._running,
            "instance_id": self.queue_manager.instance_id,
            "distributed": self.queue_manager.distributed,
            "worker_pool": self.worker_pool.status(),
            "scheduler": self.scheduler.status(),
        }
