"""
Job handlers registry and implementations.

A handler is anything with a ``run(context)`` method; plain functions
taking the context are wrapped on registration. Handlers raise JobError
to have the job reported as failed to the server.
"""

import logging
from collections.abc import Callable
from numbers import Number
from typing import Any, Protocol, runtime_checkable

from gearqueue.exceptions import HandlerNotFoundError, JobError
from gearqueue.types.job import JobContext

logger = logging.getLogger(__name__)


@runtime_checkable
class JobHandler(Protocol):
    """Protocol for job handlers."""

    def run(self, context: JobContext) -> Any:
        ...


class FunctionHandler:
    """Adapts a plain ``func(context)`` callable to the handler protocol."""

    def __init__(self, func: Callable[[JobContext], Any]):
        self.func = func

    def __repr__(self) -> str:
        return f"<FunctionHandler {getattr(self.func, '__name__', self.func)!r}>"

    def run(self, context: JobContext) -> Any:
        return self.func(context)


class HandlerRegistry:
    """
    Maps function names to handlers.

    Example:
        registry = HandlerRegistry()

        @registry.register("reverse")
        def reverse(context):
            return context.args[::-1]
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, name: str, handler: JobHandler | Callable[[JobContext], Any]) -> JobHandler:
        """
        Register a handler under a function name, replacing any earlier one.

        Args:
            name: The function name the worker announces.
            handler: A handler object, handler class or plain function.

        Returns:
            The registered handler.
        """
        if isinstance(handler, type):
            handler = handler()
        if not isinstance(handler, JobHandler):
            if not callable(handler):
                raise TypeError(f"Invalid handler for {name}: {handler!r}")
            handler = FunctionHandler(handler)

        self._handlers[name] = handler
        logger.debug("Registered handler", extra={"function": name})
        return handler

    def register(self, name: str) -> Callable[[Any], Any]:
        """
        Decorator to register a job handler.

        The decorated object is returned unchanged.

        Example:
            @registry.register("send_email")
            def send_email(context: JobContext) -> dict:
                ...
        """

        def decorator(handler: Any) -> Any:
            self.add(name, handler)
            return handler

        return decorator

    def get(self, name: str) -> JobHandler:
        """
        Get the handler for a function name.

        Raises:
            HandlerNotFoundError: If nothing is registered under the name.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise HandlerNotFoundError(f"No handler registered for function: {name}")
        return handler

    def names(self) -> list[str]:
        """List all registered function names."""
        return list(self._handlers.keys())


# Default registry used by workers that are not given one
_registry = HandlerRegistry()


def get_registry() -> HandlerRegistry:
    """Get the default handler registry."""
    return _registry


def register_handler(name: str) -> Callable[[Any], Any]:
    """
    Decorator to register a handler in the default registry.

    Example:
        @register_handler("resize_image")
        def resize_image(context: JobContext) -> dict:
            ...
    """
    return _registry.register(name)


def list_handlers() -> list[str]:
    """List all function names in the default registry."""
    return _registry.names()


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
def handle_echo(context: JobContext) -> Any:
    """
    Echo handler for testing.

    Simply returns the decoded arguments.
    """
    logger.info("Echo job executing", extra={"handle": context.handle})
    return context.args


@register_handler("sum")
def handle_sum(context: JobContext) -> dict[str, Any]:
    """
    Add up the numbers in a list, or in the values of a mapping.

    Non-numeric items are skipped. Progress is reported after each item.
    """
    args = context.args
    if isinstance(args, dict):
        items = list(args.values())
    elif isinstance(args, list):
        items = args
    else:
        raise JobError(f"sum expects a list or an object, got {type(args).__name__}")

    total: Any = 0
    for i, item in enumerate(items, start=1):
        if isinstance(item, Number) and not isinstance(item, bool):
            total += item
        context.status(i, len(items))

    return {"sum": total}
