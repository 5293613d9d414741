"""FastAPI integration helpers for pyjobqueue."""

from __future__ import annotations

from contextlib import asynccontextmanager

try:
    from fastapi import FastAPI, Request
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install pyjobqueue[fastapi]`."
    ) from exc

from pyjobqueue.client import IntegrationJobCreator, JobClient
from pyjobqueue.server.system import JobSystem


class JobSystemFastAPIPlugin:
    def __init__(self, app: FastAPI, system: JobSystem, run_workers: bool = True):
        self.app = app
        self.system = system
        self.run_workers = run_workers

        app.state.job_system = system
        # Wrap whatever lifespan the app already has.
        inner_lifespan = app.router.lifespan_context

        @asynccontextmanager
        async def lifespan(app_):
            await self.startup()
            try:
                async with inner_lifespan(app_) as state:
                    yield state
            finally:
                await self.shutdown()

        app.router.lifespan_context = lifespan

    def get_client(self) -> JobClient:
        return self.system.client

    async def startup(self) -> None:
        if self.run_workers:
            self.system.start()

    async def shutdown(self) -> None:
        self.system.shutdown()


def get_job_client(request: Request) -> JobClient:
    """FastAPI dependency: ``client: JobClient = Depends(get_job_client)``."""
    return request.app.state.job_system.client


def get_job_creator(request: Request) -> IntegrationJobCreator:
    return request.app.state.job_system.job_creator


def add_job_system_to_fastapi(
    app: FastAPI, system: JobSystem, run_workers: bool = True
) -> JobSystemFastAPIPlugin:
    return JobSystemFastAPIPlugin(app, system, run_workers=run_workers)
