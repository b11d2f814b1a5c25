"""Relation: immutable, composable query description.

A Relation describes *what* to fetch for one source entity type. Builder
methods never mutate; each returns a new Relation, so a base Relation can be
shared by any number of derived queries. Nothing runs until a terminal
operation (``all``, ``first``, ``count``, ``update_all``, ``delete_all``...)
hands the compiled statement to the session's backend.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, AsyncIterator, List, Optional, Tuple

from .core.filters import ColumnRef, OrderSpec, Predicate
from .errors import DetachedRelationError

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .entity import Entity
    from .schema import Schema
    from .session import Session
    from .sql.compiler import CompiledStatement


@dataclass(frozen=True)
class JoinSpec:
    """One join clause.

    ``table`` is the physical table joined in, ``alias`` the name it is
    referenced by (defaults to the table name), ``target`` the mapped entity
    type when there is one (used to validate column references), and ``on``
    the conditions ANDed into the ON clause.
    """

    table: str
    on: Tuple[Predicate, ...]
    target: Optional[type] = None
    alias: Optional[str] = None
    outer: bool = False

    @property
    def name(self) -> str:
        return self.alias or self.table


@dataclass(frozen=True)
class Relation:
    entity: type
    schema: "Schema" = field(repr=False, compare=False)
    predicates: Tuple[Predicate, ...] = ()
    ordering: Tuple[OrderSpec, ...] = ()
    limit_value: Optional[int] = None
    offset_value: Optional[int] = None
    columns: Optional[Tuple[str, ...]] = None
    joins: Tuple[JoinSpec, ...] = ()
    eager: Tuple[str, ...] = ()
    grouping: Tuple[ColumnRef, ...] = ()
    owner_key: Optional[ColumnRef] = None
    owner_type_key: Optional[ColumnRef] = None
    unresolved_mode: Optional[str] = None
    session: Optional["Session"] = field(default=None, repr=False, compare=False)

    @property
    def alias(self) -> str:
        """Name the source table is referenced by."""
        return self.schema.mapping_for(self.entity).table

    # --- builder operations -----------------------------------------------------
    def filter(self, template: str, *values: Any) -> "Relation":
        """Add a raw condition; ``?`` markers bind ``values`` positionally.

        Column names inside ``template`` are not checked against the field
        mapping: a misspelt one fails in the backend as ``BackendError``. Use
        ``where``, ``filter_by`` or ``Entity.field`` for validated references
        (unknown names raise ``UnknownField`` at compile time).
        """
        return replace(self, predicates=self.predicates + (Predicate.raw(template, *values),))

    def where(self, column: Any, op: str = 'eq', value: Any = None) -> "Relation":
        """Add a structured predicate: ``where('name', 'like', 'a%')``."""
        return replace(self, predicates=self.predicates + (Predicate.compare(column, op, value),))

    def filter_by(self, **fields: Any) -> "Relation":
        preds = tuple(Predicate.compare(name, 'eq', value) for name, value in fields.items())
        return replace(self, predicates=self.predicates + preds)

    def add_predicate(self, predicate: Optional[Predicate]) -> "Relation":
        if predicate is None:
            return self
        return replace(self, predicates=self.predicates + (predicate,))

    def order_by(self, *specs: Any) -> "Relation":
        """Replace the ordering: ``order_by('created_at:desc', 'id')``."""
        return replace(self, ordering=tuple(OrderSpec.parse(s) for s in specs))

    def limit(self, n: Optional[int]) -> "Relation":
        return replace(self, limit_value=_non_negative('limit', n))

    def offset(self, n: Optional[int]) -> "Relation":
        return replace(self, offset_value=_non_negative('offset', n))

    def select(self, *columns: str) -> "Relation":
        return replace(self, columns=tuple(columns) if columns else None)

    def group_by(self, *columns: Any) -> "Relation":
        return replace(self, grouping=tuple(ColumnRef.parse(c) for c in columns))

    def join(self, target: Any, on: Optional[str] = None, *values: Any, outer: bool = False, alias: Optional[str] = None) -> "Relation":
        """Join an association by name, or an entity type / table with a raw ``on`` condition.

        Examples:
            session.query(Widget).join('gadgets')
            session.query(Widget).join(Gadget, 'gadgets.widget_id = widgets.id AND gadgets.size > ?', 3)
        """
        if on is None:
            if not isinstance(target, str):
                raise ValueError("join() without an ON condition expects an association name")
            specs = self.schema.resolver.join_specs(self.entity, target)
            if outer:
                specs = [replace(s, outer=True) for s in specs]
            return replace(self, joins=self.joins + tuple(specs))
        if isinstance(target, str):
            spec = JoinSpec(table=target, on=(Predicate.raw(on, *values),), alias=alias, outer=outer)
        else:
            table = self.schema.mapping_for(target).table
            spec = JoinSpec(table=table, on=(Predicate.raw(on, *values),), target=target, alias=alias, outer=outer)
        return replace(self, joins=self.joins + (spec,))

    def add_join(self, spec: JoinSpec) -> "Relation":
        return replace(self, joins=self.joins + (spec,))

    def eager_load(self, *names: str) -> "Relation":
        new = tuple(n for n in names if n not in self.eager)
        return replace(self, eager=self.eager + new)

    def with_owner_key(self, ref: Optional[ColumnRef], type_ref: Optional[ColumnRef] = None) -> "Relation":
        """Project ``ref`` (and the owner's polymorphic type ``type_ref``) as extra columns.

        Eager batches partition their rows by these.
        """
        return replace(self, owner_key=ref, owner_type_key=type_ref)

    def on_unresolved(self, mode: str) -> "Relation":
        if mode not in ('fail', 'skip'):
            raise ValueError(f"Unknown unresolved-type mode {mode!r}")
        return replace(self, unresolved_mode=mode)

    def bind(self, session: Optional["Session"]) -> "Relation":
        return replace(self, session=session)

    def unscoped(self) -> "Relation":
        return replace(self, predicates=(), ordering=(), limit_value=None, offset_value=None, grouping=())

    def qualified(self) -> "Relation":
        """Copy where every unqualified column reference names the source table."""
        alias = self.alias
        return replace(
            self,
            predicates=tuple(p.qualified(alias) for p in self.predicates),
            ordering=tuple(o.qualified(alias) for o in self.ordering),
            grouping=tuple(g.qualified(alias) for g in self.grouping),
        )

    def merge(self, other: "Relation") -> "Relation":
        """Compose ``other`` into this Relation.

        Filters and joins concatenate; limit takes the smaller value and offset
        the larger (the more restrictive of each); ``other``'s ordering and
        grouping win when set. When ``other`` has a different source type, its
        unqualified column references are qualified with its own table first.
        """
        if other.entity is not self.entity:
            other = other.qualified()
        joins = self.joins + tuple(j for j in other.joins if j not in self.joins)
        return replace(
            self,
            predicates=self.predicates + other.predicates,
            joins=joins,
            ordering=other.ordering or self.ordering,
            grouping=other.grouping or self.grouping,
            limit_value=_restrictive(self.limit_value, other.limit_value, min),
            offset_value=_restrictive(self.offset_value, other.offset_value, max),
            eager=self.eager + tuple(n for n in other.eager if n not in self.eager),
        )

    # --- compilation ------------------------------------------------------------
    def _compiler(self):
        if self.session is not None:
            return self.session.compiler
        return self.schema.compiler

    def compile(self) -> "CompiledStatement":
        return self._compiler().compile(self)

    def to_sql(self) -> str:
        return self.compile().text

    # --- terminal operations ----------------------------------------------------
    def _require_session(self) -> "Session":
        if self.session is None:
            raise DetachedRelationError(
                f"Relation over {self.entity.__name__} is not bound to a session; use session.query() or bind()"
            )
        return self.session

    async def all(self) -> List["Entity"]:
        """Execute and materialize every matching row. Re-queries on each call."""
        return await self._require_session().fetch(self)

    async def iterate(self) -> AsyncIterator["Entity"]:
        for entity in await self.all():
            yield entity

    def __aiter__(self) -> AsyncIterator["Entity"]:
        return self.iterate()

    async def first(self) -> Optional["Entity"]:
        relation = self
        if not relation.ordering:
            pk = self.schema.mapping_for(self.entity).primary_key
            relation = relation.order_by(pk)
        rows = await relation.limit(1).all()
        return rows[0] if rows else None

    async def find(self, pk: Any) -> Optional["Entity"]:
        key = self.schema.mapping_for(self.entity).primary_key
        return await self.where(ColumnRef(key, self.alias), 'eq', pk).first()

    async def count(self) -> int:
        return await self._require_session().count(self)

    async def exists(self) -> bool:
        return await self.limit(1).count() > 0

    async def update_all(self, **fields: Any) -> int:
        """Bulk UPDATE of every matching row; bypasses entity state and per-entity hooks."""
        if not fields:
            raise ValueError("update_all() needs at least one field")
        return await self._require_session().update_all(self, fields)

    async def delete_all(self) -> int:
        return await self._require_session().delete_all(self)


def _non_negative(name: str, n: Optional[int]) -> Optional[int]:
    if n is None:
        return None
    n = int(n)
    if n < 0:
        raise ValueError(f"{name} must be >= 0, got {n}")
    return n


def _restrictive(a: Optional[int], b: Optional[int], pick) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return pick(a, b)
