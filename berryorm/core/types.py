from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ConfigurationError, UnknownDiscriminator, UnregisteredType
from .filters import ColumnRef, Predicate


class TypeResolver:
    """Closed, bidirectional map between discriminator values and entity types.

    One resolver is built per single-table family (all variants sharing one
    table and discriminator column), and one schema-wide resolver maps
    polymorphic names for ``(type, id)`` associations; the latter has no
    column and therefore no scoped filter.

    The map is immutable once constructed.
    """

    def __init__(self, base: Optional[type], entries: Mapping[str, type], *, column: Optional[str] = None, table: Optional[str] = None):
        by_value: Dict[str, type] = {}
        by_type: Dict[type, str] = {}
        for value, entity_type in entries.items():
            if entity_type in by_type:
                raise ConfigurationError(
                    f"{entity_type.__name__} registered under two discriminator values: "
                    f"{by_type[entity_type]!r} and {value!r}"
                )
            by_value[str(value)] = entity_type
            by_type[entity_type] = str(value)
        self.base = base
        self.column = column
        self.table = table
        self._by_value = MappingProxyType(by_value)
        self._by_type = MappingProxyType(by_type)

    @property
    def family(self) -> str:
        if self.base is not None:
            return self.base.__name__
        return 'polymorphic names'

    @property
    def values(self) -> List[str]:
        return list(self._by_value.keys())

    def types(self) -> List[type]:
        return list(self._by_type.keys())

    def __contains__(self, entity_type: Any) -> bool:
        return entity_type in self._by_type

    def resolve_type(self, value: Any) -> type:
        """Concrete type for a stored discriminator value.

        A null or empty value resolves to the family base type.
        """
        if value is None or value == '':
            if self.base is None:
                raise UnknownDiscriminator(value, self.family)
            return self.base
        try:
            return self._by_value[str(value)]
        except KeyError:
            raise UnknownDiscriminator(value, self.family) from None

    def discriminator_for(self, entity_type: type) -> str:
        try:
            return self._by_type[entity_type]
        except KeyError:
            raise UnregisteredType(entity_type, self.family) from None

    def descendants(self, entity_type: type) -> List[type]:
        """``entity_type`` plus every registered variant inheriting from it."""
        if entity_type not in self._by_type:
            raise UnregisteredType(entity_type, self.family)
        return [t for t in self._by_type if issubclass(t, entity_type)]

    def scoped_filter(self, entity_type: type, alias: Optional[str] = None) -> Optional[Predicate]:
        """Discriminator restriction narrowing the shared table to ``entity_type``.

        Returns ``None`` when ``entity_type`` is the family base: querying the
        base returns every variant. Otherwise the predicate matches the type's
        own value and those of all registered descendants.
        """
        if self.column is None:
            return None
        if entity_type is self.base:
            self.discriminator_for(entity_type)
            return None
        values = [self._by_type[t] for t in self.descendants(entity_type)]
        ref = ColumnRef(self.column, alias or self.table)
        if len(values) == 1:
            return Predicate.compare(ref, 'eq', values[0])
        return Predicate.compare(ref, 'in', sorted(values))

    def __repr__(self) -> str:
        return f"TypeResolver({self.family}, {dict(self._by_value)!r})"
