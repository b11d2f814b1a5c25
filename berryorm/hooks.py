from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PRE_PERSIST = 'pre_persist'
POST_PERSIST = 'post_persist'
PRE_DELETE = 'pre_delete'
POST_DELETE = 'post_delete'
AFTER_MATERIALIZE = 'after_materialize'
BEFORE_BULK = 'before_bulk'

EVENTS = (PRE_PERSIST, POST_PERSIST, PRE_DELETE, POST_DELETE, AFTER_MATERIALIZE, BEFORE_BULK)


class Hooks:
    """Ordered lifecycle handler lists, one per event.

    Handlers run in registration order and may be plain functions or
    coroutines. Entity events call ``handler(entity, session)``;
    ``before_bulk`` calls ``handler(relation, operation, fields)`` where
    ``operation`` is ``"update"`` or ``"delete"`` and ``fields`` is ``None``
    for deletes. A handler registered for an entity type only sees that type
    and its subclasses. Exceptions raised by a handler propagate and abort
    the operation.

    Example:
        hooks = Hooks()

        @hooks.on('pre_persist', Post)
        def stamp(post, session):
            post.title = post.title.strip()
    """

    def __init__(self):
        self._handlers: Dict[str, List[Tuple[Callable[..., Any], Optional[type]]]] = {e: [] for e in EVENTS}

    def _check(self, event: str) -> None:
        if event not in self._handlers:
            raise ValueError(f"Unknown hook event {event!r}; expected one of {EVENTS}")

    def register(self, event: str, handler: Callable[..., Any], entity_type: Optional[type] = None) -> Callable[..., Any]:
        self._check(event)
        if not callable(handler):
            raise TypeError(f"Hook handler for {event!r} must be callable")
        self._handlers[event].append((handler, entity_type))
        return handler

    def on(self, event: str, entity_type: Optional[type] = None):
        """Decorator form of :meth:`register`."""

        def deco(fn):
            return self.register(event, fn, entity_type)

        return deco

    def handlers(self, event: str, subject_type: Optional[type] = None) -> List[Callable[..., Any]]:
        self._check(event)
        return [
            fn for fn, only in self._handlers[event]
            if only is None or (subject_type is not None and issubclass(subject_type, only))
        ]

    def __bool__(self) -> bool:
        return any(self._handlers.values())

    async def fire(self, event: str, subject: Any, *args: Any) -> None:
        from .relation import Relation

        subject_type = subject.entity if isinstance(subject, Relation) else type(subject)
        for fn in self.handlers(event, subject_type):
            res = fn(subject, *args)
            if inspect.isawaitable(res):
                await res
