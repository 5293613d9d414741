"""Litestar integration helpers for pyjobqueue."""

from __future__ import annotations

try:
    from litestar import Litestar
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install pyjobqueue[litestar]`."
    ) from exc

from pyjobqueue.client import JobClient
from pyjobqueue.server.system import JobSystem


def get_job_client(state: State) -> JobClient:
    return state.job_system.client


def job_client_dependency() -> Provide:
    return Provide(get_job_client, sync_to_thread=False)


def configure_job_system(app: Litestar, system: JobSystem, run_workers: bool = True) -> JobClient:
    """Attach ``system`` to the app state and tie it to the app lifecycle."""
    app.state.job_system = system
    if run_workers:
        app.on_startup.append(system.start)
        app.on_shutdown.append(system.shutdown)
    return system.client
