"""Agent capability interface consumed by the step executor."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

from .errors import UnknownCapability

logger = logging.getLogger(__name__)

CapabilityHandler = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


def _is_async(handler: CapabilityHandler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


class CapabilityInvoker(Protocol):
    """Anything that can run a named capability with bound inputs."""

    async def invoke(self, capability: str, inputs: dict[str, Any], timeout: float) -> Any:
        """Return the capability output or raise; must respect ``timeout``."""


class CapabilityResolver:
    """Map capability names to handlers.

    Each processor gets its own resolver so that different workers (and
    tests) can bind different integrations without sharing global state.

    Example::

        capabilities = CapabilityResolver()

        @capabilities.capability("classify_reply")
        async def classify(inputs):
            return {"sentiment": "positive"}
    """

    def __init__(self, handlers: Optional[Mapping[str, CapabilityHandler]] = None) -> None:
        self._handlers: dict[str, CapabilityHandler] = dict(handlers or {})

    def register(self, name: str, handler: CapabilityHandler) -> None:
        if name in self._handlers:
            logger.warning(f"Replacing handler for capability {name}")
        self._handlers[name] = handler

    def capability(self, name: Optional[str] = None) -> Callable[[CapabilityHandler], CapabilityHandler]:
        """Decorator registering a handler under ``name`` (default: function name)."""

        def decorator(func: CapabilityHandler) -> CapabilityHandler:
            self.register(name or func.__name__, func)
            return func

        return decorator

    def resolve(self, name: str) -> CapabilityHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownCapability(f"No handler registered for capability '{name}'") from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def invoke(self, capability: str, inputs: dict[str, Any], timeout: float) -> Any:
        handler = self.resolve(capability)

        async def _call() -> Any:
            if _is_async(handler):
                result = handler(dict(inputs))
            else:
                # sync handlers run in a thread so the timeout still applies
                result = await asyncio.to_thread(handler, dict(inputs))
            if inspect.isawaitable(result):
                result = await result
            return result

        return await asyncio.wait_for(_call(), timeout)
