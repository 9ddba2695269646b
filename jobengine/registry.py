"""
Registries that resolve string identifiers to code.

Envelopes cross process boundaries as data, so handlers, failure hooks,
batch/chain callbacks and middleware are referenced by name and looked up
here at execution time.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or expired reservations.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from jobengine.exceptions import TerminalFailure, UnknownCommand
from jobengine.middleware import JobMiddleware, RateLimited, WithoutOverlapping
from jobengine.types.batch import Batch
from jobengine.types.envelope import JobEnvelope, MiddlewareSpec
from jobengine.types.job import JobContext

logger = logging.getLogger(__name__)

# Type aliases for registered callables
JobHandler = Callable[[JobContext], Awaitable[Any]]
FailureHook = Callable[[JobContext, TerminalFailure], Awaitable[None]]
BatchCallbackFn = Callable[[Batch, TerminalFailure | None], Awaitable[None]]
ChainCatchFn = Callable[[JobEnvelope, TerminalFailure], Awaitable[None]]
MiddlewareFactory = Callable[..., JobMiddleware]


class Registry:
    """
    Name -> callable tables for one application.

    Example:
        registry = Registry()

        @registry.handler("send_email")
        async def send_email(context: JobContext) -> None:
            ...

        @registry.failure_hook("send_email")
        async def send_email_failed(context: JobContext, error: TerminalFailure) -> None:
            ...
    """

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}
        self._failure_hooks: dict[str, FailureHook] = {}
        self._callbacks: dict[str, Callable[..., Awaitable[None]]] = {}
        self._middleware: dict[str, MiddlewareFactory] = {
            "rate_limited": RateLimited,
            "without_overlapping": WithoutOverlapping,
        }

    def handler(self, command_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator registering the handler for a command type."""

        def decorator(fn: JobHandler) -> JobHandler:
            self._handlers[command_type] = fn
            logger.debug(f"Registered handler for command type: {command_type}")
            return fn

        return decorator

    def failure_hook(self, command_type: str) -> Callable[[FailureHook], FailureHook]:
        """Decorator registering the hook run once when a command type fails permanently."""

        def decorator(fn: FailureHook) -> FailureHook:
            self._failure_hooks[command_type] = fn
            return fn

        return decorator

    def callback(self, name: str) -> Callable:
        """Decorator registering a batch or chain callback under `name`."""

        def decorator(fn):
            self._callbacks[name] = fn
            return fn

        return decorator

    def middleware(self, name: str) -> Callable[[MiddlewareFactory], MiddlewareFactory]:
        """Decorator registering a middleware factory under `name`."""

        def decorator(factory: MiddlewareFactory) -> MiddlewareFactory:
            self._middleware[name] = factory
            return factory

        return decorator

    def get_handler(self, command_type: str) -> JobHandler | None:
        return self._handlers.get(command_type)

    def resolve_handler(self, command_type: str) -> JobHandler:
        """
        Get the handler for a command type.

        Raises:
            UnknownCommand: If no handler is registered.
        """
        handler = self._handlers.get(command_type)
        if handler is None:
            raise UnknownCommand(command_type)
        return handler

    def get_failure_hook(self, command_type: str) -> FailureHook | None:
        return self._failure_hooks.get(command_type)

    def get_callback(self, name: str) -> Callable[..., Awaitable[None]] | None:
        return self._callbacks.get(name)

    def has_callback(self, name: str) -> bool:
        return name in self._callbacks

    def build_middleware(self, spec: MiddlewareSpec) -> JobMiddleware:
        """Instantiate the middleware a MiddlewareSpec names."""
        factory = self._middleware.get(spec.name)
        if factory is None:
            raise ValueError(f"Unknown job middleware: {spec.name}")
        return factory(**spec.options)

    def list_handlers(self) -> list[str]:
        """List all registered command types."""
        return list(self._handlers.keys())


def load_registry(path: str) -> Registry:
    """
    Import a registry from a "package.module:attribute" path.

    Importing the module runs its handler decorators.
    """
    module_name, _, attribute = path.partition(":")
    module = importlib.import_module(module_name)
    registry = getattr(module, attribute or "registry", None)
    if not isinstance(registry, Registry):
        raise ValueError(f"{path} does not name a Registry")
    return registry
