"""Schema: the startup-time registry of entity types.

A Schema owns everything that is built once and then only read: field
mappings, the SQLAlchemy ``MetaData`` rendered from them, the association
registry and the discriminator resolvers. Declare entities with the
:meth:`Schema.entity` decorator, then call :meth:`Schema.finalize` (done
implicitly when a Session is created) to validate the declarations and
close registration.

Example:
    schema = Schema()

    @schema.entity(columns=[column('name')])
    class Widget(Entity):
        gadgets = has_many('Gadget')
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import sqlalchemy as sa

from .core.associations import AssociationRegistry, AssociationResolver
from .core.fields import AssociationField
from .core.filters import Predicate
from .core.mapping import ColumnDef, FieldMapping
from .core.naming import table_name_for
from .core.types import TypeResolver
from .entity import Entity
from .errors import ConfigurationError, UnmappedType

logger = logging.getLogger(__name__)

# Entity API names a mapped column would hide from attribute access
_RESERVED_NAMES = frozenset(name for name in dir(Entity) if not name.startswith('_'))


class Schema:
    def __init__(self, name: str = 'default'):
        self.name = name
        self.metadata = sa.MetaData()
        self.associations = AssociationRegistry(self)
        self.resolver = AssociationResolver(self)
        self._mappings: Dict[type, FieldMapping] = {}
        self._types: Dict[str, type] = {}
        # single-table subtype -> registered parent sharing its table
        self._parents: Dict[type, type] = {}
        self._discriminators: Dict[type, str] = {}
        self._polymorphic_names: Dict[type, str] = {}
        self._families: Dict[type, TypeResolver] = {}
        self._polymorphic: Optional[TypeResolver] = None
        self._compiler = None
        self._finalizing = False
        self.closed = False

    # --- registration -------------------------------------------------------------
    def entity(
        self,
        cls: Optional[type] = None,
        *,
        mapping: Any = None,
        table: Optional[str] = None,
        columns: Iterable[Any] = (),
        primary_key: str = 'id',
        discriminator_column: Optional[str] = None,
        discriminator: Optional[str] = None,
        polymorphic_name: Optional[str] = None,
    ):
        """Class decorator registering an :class:`Entity` subclass.

        Args:
            mapping: A prebuilt :class:`FieldMapping` or SQLAlchemy ``Table``;
                overrides ``table``/``columns``/``primary_key``.
            table: Table name; defaults to the tableized class name.
            columns: Column declarations (:func:`column` results or
                ``(name, type)`` tuples).
            primary_key: Surrogate key column, added when not declared.
            discriminator_column: Column naming the concrete variant; makes the
                type the base of a single-table family.
            discriminator: Value stored for this type; defaults to the class
                name. Only valid inside a single-table family.
            polymorphic_name: Name stored in ``<x>_type`` columns of
                polymorphic associations pointing at this type.

        A subclass of a registered type that does not name a different table
        joins its parent's single-table family; its ``columns`` extend the
        shared table.
        """

        def wrap(klass: type) -> type:
            self.register_entity(
                klass,
                mapping=mapping,
                table=table,
                columns=columns,
                primary_key=primary_key,
                discriminator_column=discriminator_column,
                discriminator=discriminator,
                polymorphic_name=polymorphic_name,
            )
            return klass

        if cls is not None:
            return wrap(cls)
        return wrap

    def register_entity(
        self,
        klass: type,
        *,
        mapping: Any = None,
        table: Optional[str] = None,
        columns: Iterable[Any] = (),
        primary_key: str = 'id',
        discriminator_column: Optional[str] = None,
        discriminator: Optional[str] = None,
        polymorphic_name: Optional[str] = None,
    ) -> FieldMapping:
        self._ensure_open(f"register {klass.__name__}")
        if not (isinstance(klass, type) and issubclass(klass, Entity)):
            raise ConfigurationError(f"{klass!r} must subclass berryorm.Entity")
        if klass.__name__ in self._types:
            raise ConfigurationError(f"Entity type name {klass.__name__!r} registered twice")

        parent = next((base for base in klass.__mro__[1:] if base in self._mappings), None)
        if isinstance(mapping, sa.Table):
            mapping = FieldMapping.from_table(mapping, discriminator=discriminator_column)
        if mapping is None:
            if parent is not None and (table is None or table == self._mappings[parent].table):
                parent_mapping = self._mappings[parent]
                if parent_mapping.discriminator is None:
                    raise ConfigurationError(
                        f"{klass.__name__} shares table {parent_mapping.table!r} with {parent.__name__}, "
                        f"which declares no discriminator column"
                    )
                mapping = parent_mapping.extend(_column_defs(columns))
                self._parents[klass] = parent
            else:
                mapping = FieldMapping(
                    table=table or table_name_for(klass.__name__),
                    columns=_column_defs(columns),
                    primary_key=primary_key,
                    discriminator=discriminator_column,
                )
        shadowed = sorted(set(mapping.column_names) & _RESERVED_NAMES)
        if shadowed:
            raise ConfigurationError(
                f"{klass.__name__} maps column(s) {shadowed} that clash with Entity attributes; rename them"
            )
        if klass not in self._parents:
            for other, other_mapping in self._mappings.items():
                if other_mapping.table == mapping.table:
                    raise ConfigurationError(
                        f"Table {mapping.table!r} is already mapped by {other.__name__}; "
                        f"subclass it to share the table"
                    )

        if mapping.discriminator is not None:
            value = str(discriminator or klass.__name__)
            root = self._root(klass)
            for other, other_value in self._discriminators.items():
                if other_value == value and self._root(other) is root:
                    raise ConfigurationError(
                        f"Discriminator value {value!r} used by both {other.__name__} and {klass.__name__}"
                    )
            self._discriminators[klass] = value
        elif discriminator is not None:
            raise ConfigurationError(f"{klass.__name__} has a discriminator value but no discriminator column")

        name = polymorphic_name or klass.__name__
        for other, other_name in self._polymorphic_names.items():
            if other_name == name:
                raise ConfigurationError(f"Polymorphic name {name!r} used by both {other.__name__} and {klass.__name__}")

        klass.__berry_mapping__ = mapping
        klass.__berry_schema__ = self
        self._mappings[klass] = mapping
        self._types[klass.__name__] = klass
        self._polymorphic_names[klass] = name
        mapping.to_table(self.metadata)

        for attr, value in list(klass.__dict__.items()):
            if isinstance(value, AssociationField):
                self.associations.register(klass, attr, value)
        logger.debug("registered %s on table %s", klass.__name__, mapping.table)
        return mapping

    def _ensure_open(self, action: str = 'register') -> None:
        if self.closed:
            raise ConfigurationError(f"Schema {self.name!r} is finalized; cannot {action}")

    # --- lookups ---------------------------------------------------------------------
    @property
    def entities(self) -> List[type]:
        return list(self._mappings)

    def mapping_for(self, entity_type: type) -> FieldMapping:
        try:
            return self._mappings[entity_type]
        except (KeyError, TypeError):
            raise UnmappedType(entity_type) from None

    def table_for(self, entity_type: type) -> sa.Table:
        return self.metadata.tables[self.mapping_for(entity_type).table]

    def entity_type(self, name: Any) -> type:
        """Registered type for a class name (or the type itself)."""
        if isinstance(name, type) and name in self._mappings:
            return name
        try:
            return self._types[name]
        except (KeyError, TypeError):
            raise UnmappedType(name) from None

    def polymorphic_name(self, entity_type: type) -> str:
        try:
            return self._polymorphic_names[entity_type]
        except KeyError:
            raise UnmappedType(entity_type) from None

    def _root(self, entity_type: type) -> type:
        while entity_type in self._parents:
            entity_type = self._parents[entity_type]
        return entity_type

    def family_root(self, entity_type: type) -> type:
        """Base type of ``entity_type``'s single-table family (itself when it has none)."""
        self.mapping_for(entity_type)
        return self._root(entity_type)

    # --- type resolution ---------------------------------------------------------------
    def _ensure_finalized(self) -> None:
        if not self.closed and not self._finalizing:
            self.finalize()

    @property
    def polymorphic_types(self) -> TypeResolver:
        """Resolver between polymorphic names and types, for ``(type, id)`` associations."""
        self._ensure_finalized()
        return self._polymorphic

    def type_resolver_for(self, entity_type: type) -> Optional[TypeResolver]:
        """The single-table family resolver for ``entity_type``, or None outside families."""
        self._ensure_finalized()
        self.mapping_for(entity_type)
        return self._families.get(entity_type)

    def scoped_filter(self, entity_type: type, alias: Optional[str] = None) -> Optional[Predicate]:
        resolver = self.type_resolver_for(entity_type)
        if resolver is None:
            return None
        return resolver.scoped_filter(entity_type, alias)

    def _build_resolvers(self) -> None:
        members: Dict[type, Dict[str, type]] = {}
        for entity_type, value in self._discriminators.items():
            members.setdefault(self._root(entity_type), {})[value] = entity_type
        families: Dict[type, TypeResolver] = {}
        for root, entries in members.items():
            mapping = self._mappings[root]
            resolver = TypeResolver(root, entries, column=mapping.discriminator, table=mapping.table)
            for entity_type in entries.values():
                families[entity_type] = resolver
        self._families = families
        self._polymorphic = TypeResolver(
            None, {name: entity_type for entity_type, name in self._polymorphic_names.items()},
        )

    # --- lifecycle -------------------------------------------------------------------------
    def finalize(self) -> "Schema":
        """Validate every declaration and close registration. Idempotent."""
        if self.closed:
            return self
        self._finalizing = True
        try:
            self._build_resolvers()
            self.associations.validate()
        finally:
            self._finalizing = False
        self.closed = True
        logger.info(
            "schema %s finalized: %d entity types, %d associations, %d single-table families",
            self.name, len(self._mappings), len(self.associations), len({id(r) for r in self._families.values()}),
        )
        return self

    @property
    def compiler(self):
        """Default compiler (SQLite dialect) for Relations not bound to a session."""
        if self._compiler is None:
            from .sql.compiler import QueryCompiler

            self._ensure_finalized()
            self._compiler = QueryCompiler(self)
        return self._compiler

    def query(self, entity_type: type):
        """Unbound Relation over ``entity_type``; bind it to a session to execute."""
        from .relation import Relation

        self._ensure_finalized()
        self.mapping_for(entity_type)
        return Relation(entity=entity_type, schema=self)

    def __repr__(self) -> str:
        state = 'finalized' if self.closed else 'open'
        return f"<Schema {self.name} {state} types={len(self._mappings)}>"


def _column_defs(columns: Iterable[Any]) -> tuple:
    out = []
    for c in columns or ():
        if isinstance(c, ColumnDef):
            out.append(c)
        elif isinstance(c, str):
            out.append(ColumnDef(c))
        else:
            out.append(ColumnDef(*c))
    return tuple(out)
