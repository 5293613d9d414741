# main.py
import logging
import time

from pyjobqueue.cache.memory_cache import MemoryCache
from pyjobqueue.common.job import Job
from pyjobqueue.common.triggers import parse_schedule
from pyjobqueue.config import JobsConfig
from pyjobqueue.execution.performer import HandlerRegistry
from pyjobqueue.server.system import JobSystem
from pyjobqueue.storage.memory_storage import MemoryJobStore

registry = HandlerRegistry()


@registry.register("sample.add")
def sample_task(payload, tx):
    print(f"Executing sample_task with payload: {payload}")
    return payload["x"] + payload["y"]


@registry.register("sample.heartbeat")
def heartbeat(payload, tx):
    print(f"Heartbeat: {payload}")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # 1. Configure the job system
    config = JobsConfig(workers=2, poll_interval=0.5, scheduler_check_interval=5)
    system = JobSystem(config, MemoryJobStore(), cache=MemoryCache(), executor=registry)
    system.start()

    # 2. Create a job
    job = system.client.create_job("sample.add", {"x": 1, "y": 2})
    print(f"Created job {job.id} for sample.add(1, 2)")

    # 3. Add a recurring job
    system.scheduler.add_job(
        Job(
            name="heartbeat",
            handler="sample.heartbeat",
            trigger=parse_schedule("@every 1s"),
            max_executions=3,
            payload='{"source": "main"}',
        )
    )

    # 4. Wait and check job status
    time.sleep(5)  # Give the workers time to process

    print(f"\nJob after execution: {system.client.get_job(job.id)}")
    print(f"Statistics: {system.client.get_statistics()}")

    system.shutdown()
    print("\nDemonstration finished.")
