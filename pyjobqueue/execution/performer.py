# pyjobqueue/execution/performer.py
import asyncio
import importlib
import inspect
import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from pyjobqueue.common.exceptions import JobLoadError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], Any], Any]


class Executor(ABC):
    """Runs the business logic behind a handler name."""

    @abstractmethod
    def execute(self, handler_name: str, payload: Dict[str, Any], transaction: Any) -> Any:
        """Return the handler output; raise to report a failed attempt."""


def _import_handler(handler_name: str) -> Callable:
    """Dynamically imports ``module:function`` or ``module.function``."""
    if ":" in handler_name:
        module_name, _, func_name = handler_name.partition(":")
    else:
        module_name, _, func_name = handler_name.rpartition(".")
    if not module_name or not func_name:
        raise JobLoadError(f"Unknown job handler: {handler_name}")
    try:
        module = importlib.import_module(module_name)
        target_func = getattr(module, func_name)
    except (ImportError, AttributeError) as e:
        raise JobLoadError(f"Could not load job handler: {handler_name}") from e
    if not callable(target_func):
        raise JobLoadError(f"Job handler is not callable: {handler_name}")
    return target_func


class HandlerRegistry(Executor):
    """
    Name-based executor.

    Handlers are called as ``handler(payload, transaction)``. Names registered
    with ``register`` win; anything else is treated as an import path.
    Coroutine functions are run to completion on a fresh event loop.
    """

    def __init__(self, allow_imports: bool = True):
        self.allow_imports = allow_imports
        self._handlers: Dict[str, Callable] = {}
        self._lock = RLock()

    def register(self, name: str, func: Optional[Callable] = None):
        if func is not None:
            with self._lock:
                self._handlers[name] = func
            return func

        def decorator(f: Callable) -> Callable:
            self.register(name, f)
            return f

        return decorator

    def unregister(self, name: str) -> None:
        with self._lock:
            self._handlers.pop(name, None)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def resolve(self, handler_name: str) -> Callable:
        with self._lock:
            func = self._handlers.get(handler_name)
        if func is not None:
            return func
        if not self.allow_imports:
            raise JobLoadError(f"Unknown job handler: {handler_name}")
        return _import_handler(handler_name)

    def execute(self, handler_name: str, payload: Dict[str, Any], transaction: Any) -> Any:
        func = self.resolve(handler_name)
        logger.debug(f"Executing handler {handler_name}")
        if inspect.iscoroutinefunction(func):
            return asyncio.run(func(payload, transaction))
        return func(payload, transaction)
