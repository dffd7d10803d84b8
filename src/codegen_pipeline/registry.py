from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .handlers.base import BuildHandler

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[], Iterable[BuildHandler]]


def _builtin_handlers() -> list[BuildHandler]:
    from .handlers import builtin_handlers

    return builtin_handlers()


class HandlerRegistry:
    """Maps task ids to handler instances.

    Construct one per run (or share one) and pass it to the execution context.
    ``clear()`` restores the built-in handler set, which keeps test runs isolated.
    """

    def __init__(self, builtins: HandlerFactory | None = _builtin_handlers) -> None:
        self._builtins = builtins
        self._handlers: dict[str, BuildHandler] = {}
        self.clear()

    def register(self, handler: BuildHandler, *, replace: bool = False) -> None:
        handler_id = getattr(handler, "id", None)
        if not isinstance(handler_id, str) or not handler_id:
            raise ValueError(f"Handler {type(handler).__name__} must define a non-empty id")
        if handler_id in self._handlers and not replace:
            logger.warning("Handler already registered for task: %s", handler_id)
            return
        self._handlers[handler_id] = handler

    def get(self, handler_id: str) -> BuildHandler | None:
        return self._handlers.get(handler_id)

    def has(self, handler_id: str) -> bool:
        return handler_id in self._handlers

    def ids(self) -> list[str]:
        return sorted(self._handlers)

    def clear(self) -> None:
        self._handlers = {}
        if self._builtins is None:
            return
        for handler in self._builtins():
            self.register(handler)

    def __contains__(self, handler_id: object) -> bool:
        return isinstance(handler_id, str) and handler_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


_default_registry: HandlerRegistry | None = None


def get_handler_registry() -> HandlerRegistry:
    """Return the lazily created process-wide registry."""
    global _default_registry
    if _default_registry is None:
        _default_registry = HandlerRegistry()
    return _default_registry


def reset_handler_registry() -> None:
    global _default_registry
    _default_registry = None
