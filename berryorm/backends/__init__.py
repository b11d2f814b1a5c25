from __future__ import annotations

from .base import Backend, WriteResult
from .sqlalchemy_async import SQLAlchemyBackend


def get_backend(bind) -> Backend:
    """Backend for ``bind``: an existing Backend is returned as-is."""
    if isinstance(bind, Backend):
        return bind
    return SQLAlchemyBackend(bind)


__all__ = [
    'Backend',
    'WriteResult',
    'SQLAlchemyBackend',
    'get_backend',
]
