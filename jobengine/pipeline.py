"""
Middleware pipeline around a job handler.
"""

from functools import partial
from typing import Any

from jobengine.registry import Registry
from jobengine.types.job import JobContext


async def run_pipeline(registry: Registry, context: JobContext) -> Any:
    """
    Run the envelope's middleware in order, then its handler.

    Raises:
        UnknownCommand: If no handler is registered for the command type.
    """
    handler = registry.resolve_handler(context.command_type)
    middleware = [registry.build_middleware(spec) for spec in context.envelope.middleware]

    async def call(index: int, ctx: JobContext) -> Any:
        if index == len(middleware):
            return await handler(ctx)
        return await middleware[index].handle(ctx, partial(call, index + 1))

    return await call(0, context)
