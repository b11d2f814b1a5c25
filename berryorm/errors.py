"""Error taxonomy for berryorm.

Registration-time errors (``ConfigurationError`` and its subclasses) are raised
while a :class:`~berryorm.schema.Schema` is being built or finalized. Compile
errors (``UnknownField``) surface to the caller of a terminal operation.
``BackendError`` wraps whatever the execution backend raised, untouched.
"""
from __future__ import annotations

from typing import Any, Optional


class BerryORMError(Exception):
    """Base class for every error raised by berryorm."""


class ConfigurationError(BerryORMError):
    """Invalid schema declarations or configuration values."""


class UnmappedType(ConfigurationError):
    def __init__(self, entity_type: Any):
        name = getattr(entity_type, '__name__', entity_type)
        super().__init__(f"No field mapping registered for entity type {name!r}")
        self.entity_type = entity_type


class CyclicAssociation(ConfigurationError):
    def __init__(self, chain: list[str]):
        super().__init__("Cyclic through association: " + " -> ".join(chain))
        self.chain = list(chain)


class UnknownField(BerryORMError):
    def __init__(self, entity: str, field: str):
        super().__init__(f"Unknown field {field!r} for {entity}")
        self.entity = entity
        self.field = field


class UnknownAssociation(BerryORMError):
    def __init__(self, entity: str, name: str):
        super().__init__(f"Unknown association {name!r} on {entity}")
        self.entity = entity
        self.name = name


class UnknownDiscriminator(BerryORMError):
    def __init__(self, value: Any, family: Optional[str] = None):
        where = f" in {family}" if family else ""
        super().__init__(f"Unknown discriminator value {value!r}{where}")
        self.value = value
        self.family = family


class UnregisteredType(BerryORMError):
    def __init__(self, entity_type: Any, family: Optional[str] = None):
        name = getattr(entity_type, '__name__', entity_type)
        where = f" of {family}" if family else ""
        super().__init__(f"{name!r} is not a registered variant{where}")
        self.entity_type = entity_type
        self.family = family


class BackendError(BerryORMError):
    """Opaque wrapper around an execution backend failure.

    The original exception is kept on ``original`` and chained as ``__cause__``.
    """

    def __init__(self, original: BaseException, statement: Optional[str] = None):
        super().__init__(f"{type(original).__name__}: {original}")
        self.original = original
        self.statement = statement


class DetachedRelationError(BerryORMError):
    """A terminal operation was invoked on a Relation without a session."""


class PersistenceError(BerryORMError):
    """Invalid single-entity persistence request."""


__all__ = [
    'BerryORMError',
    'ConfigurationError',
    'UnmappedType',
    'CyclicAssociation',
    'UnknownField',
    'UnknownAssociation',
    'UnknownDiscriminator',
    'UnregisteredType',
    'BackendError',
    'DetachedRelationError',
    'PersistenceError',
]
