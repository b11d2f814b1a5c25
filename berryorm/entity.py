from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from .core.filters import ColumnRef
from .errors import ConfigurationError, PersistenceError, UnknownField

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .core.mapping import FieldMapping
    from .relation import Relation
    from .schema import Schema
    from .session import Session


class EntityState(Enum):
    NEW = 'new'
    PERSISTED = 'persisted'
    DELETED = 'deleted'


class Entity:
    """Base class for mapped entity types.

    Column values live in a per-instance dict keyed by field name and are
    exposed as attributes. Assigning a mapped field marks it dirty; the
    primary key cannot be reassigned once the entity has been persisted.

    Subclasses are registered with :meth:`berryorm.schema.Schema.entity`,
    which attaches ``__berry_mapping__`` and ``__berry_schema__``.
    """

    __berry_mapping__: "FieldMapping"
    __berry_schema__: "Schema"

    def __init__(self, **values: Any):
        object.__setattr__(self, '_values', {})
        object.__setattr__(self, '_dirty', set())
        object.__setattr__(self, '_state', EntityState.NEW)
        object.__setattr__(self, '_session', None)
        object.__setattr__(self, '_loaded', {})
        mapping = self._mapping()
        for name, value in values.items():
            if not mapping.has_column(name):
                raise UnknownField(type(self).__name__, name)
            self._values[name] = value
            self._dirty.add(name)

    @classmethod
    def _mapping(cls) -> "FieldMapping":
        mapping = cls.__dict__.get('__berry_mapping__')
        if mapping is None:
            raise ConfigurationError(f"{cls.__name__} is not registered with a schema")
        return mapping

    @classmethod
    def field(cls, name: str) -> ColumnRef:
        """Validated column reference for ``name`` on this type's table."""
        mapping = cls._mapping()
        if not mapping.has_column(name):
            raise UnknownField(cls.__name__, name)
        return ColumnRef(name, mapping.table)

    # --- attribute access ---------------------------------------------------
    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails: mapped columns
        if name.startswith('_'):
            raise AttributeError(name)
        if self._mapping().has_column(name):
            return self._values.get(name)
        raise AttributeError(f"{type(self).__name__!s} has no field {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith('_'):
            object.__setattr__(self, name, value)
            return
        mapping = self._mapping()
        if not mapping.has_column(name):
            raise UnknownField(type(self).__name__, name)
        if name == mapping.primary_key and self._state is not EntityState.NEW and value != self.pk:
            raise PersistenceError(f"Primary key of a persisted {type(self).__name__} cannot change")
        self._values[name] = value
        self._dirty.add(name)

    # --- state -------------------------------------------------------------------
    @property
    def pk(self) -> Any:
        return self._values.get(self._mapping().primary_key)

    @property
    def state(self) -> EntityState:
        return self._state

    @property
    def is_new(self) -> bool:
        return self._state is EntityState.NEW

    @property
    def is_persisted(self) -> bool:
        return self._state is EntityState.PERSISTED

    @property
    def is_deleted(self) -> bool:
        return self._state is EntityState.DELETED

    @property
    def is_dirty(self) -> bool:
        return bool(self._dirty)

    def dirty_fields(self) -> set:
        return set(self._dirty)

    def changes(self) -> Dict[str, Any]:
        return {k: self._values.get(k) for k in self._mapping().column_names if k in self._dirty}

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    @property
    def session(self) -> Optional["Session"]:
        return self._session

    def _load_row(self, values: Dict[str, Any], session: Optional["Session"]) -> None:
        self._values.update(values)
        self._dirty.clear()
        object.__setattr__(self, '_state', EntityState.PERSISTED)
        object.__setattr__(self, '_session', session)

    def _mark_persisted(self, pk: Any = None, session: Optional["Session"] = None) -> None:
        if pk is not None:
            self._values[self._mapping().primary_key] = pk
        self._dirty.clear()
        object.__setattr__(self, '_state', EntityState.PERSISTED)
        if session is not None:
            object.__setattr__(self, '_session', session)

    def _mark_deleted(self) -> None:
        object.__setattr__(self, '_state', EntityState.DELETED)

    # --- associations -------------------------------------------------------------
    def association(self, name: str) -> Optional["Relation"]:
        """Relation fetching the ``name`` association for this instance."""
        schema = type(self).__berry_schema__
        relation = schema.resolver.relation_for(self, name)
        if relation is not None and self._session is not None:
            relation = relation.bind(self._session)
        return relation

    def is_loaded(self, name: str) -> bool:
        return name in self._loaded

    def loaded(self, name: str) -> Any:
        return self._loaded[name]

    def _attach(self, name: str, value: Any) -> None:
        self._loaded[name] = value

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Entity) or other._mapping().table != self._mapping().table:
            return NotImplemented
        if self.pk is None or other.pk is None:
            return self is other
        return self.pk == other.pk

    def __hash__(self) -> int:
        if self.pk is None:
            return id(self)
        return hash((self._mapping().table, self.pk))

    def __repr__(self) -> str:
        fields = ', '.join(f"{k}={v!r}" for k, v in self._values.items())
        return f"<{type(self).__name__} {self._state.value} {fields}>"
