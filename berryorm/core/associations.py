"""Association registry and resolver.

The registry holds the immutable :class:`AssociationDescriptor` table per
entity type. The resolver turns a descriptor into a :class:`Relation`:

* for one source instance (``relation_for``),
* as join clauses on another Relation (``join_specs``),
* for a whole batch of owners in one query per association (``preload``).

``through`` associations are flattened into a list of direct hops; the
resolved Relation targets the last hop's type, joins hops ``2..n`` in order
and filters hop 1 against the owner.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from ..errors import (
    ConfigurationError,
    CyclicAssociation,
    UnknownAssociation,
    UnknownField,
    UnmappedType,
)
from ..sql.compiler import OWNER_KEY, OWNER_TYPE
from . import naming
from .fields import (
    BELONGS_TO,
    HAS_AND_BELONGS_TO_MANY,
    HAS_MANY,
    HAS_ONE,
    AssociationDescriptor,
    AssociationField,
)
from .filters import ColumnRef, Predicate

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..entity import Entity
    from ..relation import JoinSpec, Relation
    from ..schema import Schema
    from ..session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Hop:
    """One direct step of an association chain."""

    owner: type
    descriptor: AssociationDescriptor
    target: Optional[type]


@dataclass(frozen=True)
class Chain:
    """A resolved association minus its owner constraint.

    ``relation`` targets the final type with hops 2..n joined; ``key`` is the
    column on hop 1's table compared with ``owner_attr`` of the owner;
    ``type_key`` is the polymorphic type column compared with the owner's
    polymorphic name, when hop 1 is polymorphic.
    """

    relation: "Relation"
    key: ColumnRef
    owner_attr: str
    type_key: Optional[ColumnRef] = None
    depth: int = 1


class AssociationRegistry:
    def __init__(self, schema: "Schema"):
        self.schema = schema
        self._by_type: Dict[type, Dict[str, AssociationDescriptor]] = {}

    # --- registration -------------------------------------------------------------
    def register(self, source_type: type, name: str, descriptor: Any) -> AssociationDescriptor:
        """Register an association on ``source_type`` and install its accessor.

        ``descriptor`` may be an :class:`AssociationField` (as returned by
        ``has_many`` & co.) or an already built :class:`AssociationDescriptor`.
        A ``through`` chain that can already be followed is checked for cycles
        immediately; links declared later are checked again by ``validate``.
        """
        self.schema._ensure_open()
        if isinstance(descriptor, AssociationField):
            accessor = descriptor
            descriptor = accessor.build(source_type.__name__, name)
        else:
            accessor = AssociationField(kind=descriptor.kind)
        accessor.name = name
        own = self._by_type.setdefault(source_type, {})
        if name in own:
            raise ConfigurationError(f"Association {name!r} registered twice on {source_type.__name__}")
        own[name] = descriptor
        if source_type.__dict__.get(name) is not accessor:
            setattr(source_type, name, accessor)
        if descriptor.is_through:
            try:
                self.flatten(source_type, descriptor)
            except (UnknownAssociation, UnmappedType) as exc:
                # rechecked by validate() at finalize
                logger.debug("deferring chain check for %s.%s: %s", source_type.__name__, name, exc)
        return descriptor

    def get(self, source_type: type, name: str) -> AssociationDescriptor:
        found = self.find(source_type, name)
        if found is None:
            raise UnknownAssociation(source_type.__name__, name)
        return found

    def find(self, source_type: type, name: str) -> Optional[AssociationDescriptor]:
        for klass in source_type.__mro__:
            found = self._by_type.get(klass, {}).get(name)
            if found is not None:
                return found
        return None

    def for_type(self, source_type: type) -> Dict[str, AssociationDescriptor]:
        out: Dict[str, AssociationDescriptor] = {}
        for klass in reversed(source_type.__mro__):
            out.update(self._by_type.get(klass, {}))
        return out

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_type.values())

    # --- chain flattening ---------------------------------------------------------------
    def target_type(self, descriptor: AssociationDescriptor) -> Optional[type]:
        if descriptor.kind == BELONGS_TO and descriptor.is_polymorphic:
            return None
        return self.schema.entity_type(descriptor.target)

    def flatten(self, source_type: type, descriptor: AssociationDescriptor, _stack: Tuple[str, ...] = ()) -> List[Hop]:
        """Expand ``descriptor`` into its direct hops, raising ``CyclicAssociation`` on loops."""
        key = f"{descriptor.owner}.{descriptor.name}"
        if key in _stack:
            raise CyclicAssociation(list(_stack) + [key])
        stack = _stack + (key,)
        if not descriptor.is_through:
            return [Hop(source_type, descriptor, self.target_type(descriptor))]
        through = self.get(source_type, descriptor.through)
        first = self.flatten(source_type, through, stack)
        middle = first[-1].target
        if middle is None:
            raise ConfigurationError(
                f"{key}: cannot go through polymorphic belongs_to {through.name!r}"
            )
        source = self._source_descriptor(middle, descriptor)
        return first + self.flatten(middle, source, stack)

    def _source_descriptor(self, middle: type, descriptor: AssociationDescriptor) -> AssociationDescriptor:
        candidates = [descriptor.source] if descriptor.source else naming.source_candidates(descriptor.name)
        for candidate in candidates:
            found = self.find(middle, candidate)
            if found is not None:
                return found
        raise UnknownAssociation(middle.__name__, candidates[0])

    # --- validation ---------------------------------------------------------------------
    def validate(self) -> None:
        """Finalize-time checks: targets mapped, columns present, chains acyclic and joinable."""
        for source_type, own in list(self._by_type.items()):
            for name, descriptor in list(own.items()):
                if descriptor.kind == HAS_AND_BELONGS_TO_MANY:
                    descriptor = self._complete_join_table(source_type, descriptor)
                    own[name] = descriptor
                hops = self.flatten(source_type, descriptor)
                for hop in hops:
                    self._check_columns(hop)
                if descriptor.is_through:
                    for hop in hops:
                        if hop.descriptor.kind == HAS_AND_BELONGS_TO_MANY or hop.target is None:
                            raise ConfigurationError(
                                f"{source_type.__name__}.{name}: through chains cannot traverse "
                                f"{hop.descriptor.kind} association {hop.descriptor.name!r}"
                                + (" (polymorphic)" if hop.target is None else "")
                            )
                    declared = self.schema.entity_type(descriptor.target) if descriptor.target else None
                    end = hops[-1].target
                    if declared is not None and not issubclass(declared, end):
                        raise ConfigurationError(
                            f"{source_type.__name__}.{name} declares target {declared.__name__} "
                            f"but its chain ends at {end.__name__}"
                        )

    def _complete_join_table(self, source_type: type, descriptor: AssociationDescriptor) -> AssociationDescriptor:
        target = self.target_type(descriptor)
        if descriptor.join_table is None:
            owner_table = self.schema.mapping_for(source_type).table
            target_table = self.schema.mapping_for(target).table
            descriptor = replace(descriptor, join_table=naming.join_table_for(owner_table, target_table))
        metadata = self.schema.metadata
        if descriptor.join_table not in metadata.tables:
            sa.Table(
                descriptor.join_table,
                metadata,
                sa.Column(descriptor.foreign_key, sa.Integer, nullable=False),
                sa.Column(descriptor.association_foreign_key, sa.Integer, nullable=False),
            )
        return descriptor

    def _check_columns(self, hop: Hop) -> None:
        d = hop.descriptor
        owner_mapping = self.schema.mapping_for(hop.owner)
        if d.kind == BELONGS_TO:
            needed = list(d.polymorphic) if d.is_polymorphic else [d.foreign_key]
            for col in needed:
                if not owner_mapping.has_column(col):
                    raise UnknownField(hop.owner.__name__, col)
        elif d.kind in (HAS_ONE, HAS_MANY):
            target_mapping = self.schema.mapping_for(hop.target)
            needed = list(d.polymorphic) if d.is_polymorphic else [d.foreign_key]
            for col in needed:
                if not target_mapping.has_column(col):
                    raise UnknownField(hop.target.__name__, col)


class AssociationResolver:
    """Builds Relations for declared associations. Stateless over the schema."""

    def __init__(self, schema: "Schema"):
        self.schema = schema

    @property
    def registry(self) -> AssociationRegistry:
        return self.schema.associations

    def _relation(self, entity_type: type) -> "Relation":
        from ..relation import Relation

        return Relation(entity=entity_type, schema=self.schema)

    def _descriptor(self, owner_type: type, association: Any) -> AssociationDescriptor:
        if isinstance(association, AssociationDescriptor):
            return association
        return self.registry.get(owner_type, str(association))

    def _pk(self, entity_type: type) -> str:
        return self.schema.mapping_for(entity_type).primary_key

    def _table(self, entity_type: type) -> str:
        return self.schema.mapping_for(entity_type).table

    # --- link conditions ----------------------------------------------------------------
    def _link(self, hop: Hop, owner_alias: str, target_alias: str, scoped: bool = True) -> Tuple[Predicate, ...]:
        """Conditions tying hop.owner (at ``owner_alias``) to hop.target (at ``target_alias``)."""
        d = hop.descriptor
        if d.kind == BELONGS_TO:
            preds = [Predicate.columns_equal(
                ColumnRef(self._pk(hop.target), target_alias), ColumnRef(d.foreign_key, owner_alias),
            )]
        elif d.is_polymorphic:
            type_col, id_col = d.polymorphic
            preds = [
                Predicate.columns_equal(ColumnRef(id_col, target_alias), ColumnRef(self._pk(hop.owner), owner_alias)),
                Predicate.compare(ColumnRef(type_col, target_alias), 'eq', self.schema.polymorphic_name(hop.owner)),
            ]
        else:
            preds = [Predicate.columns_equal(
                ColumnRef(d.foreign_key, target_alias), ColumnRef(self._pk(hop.owner), owner_alias),
            )]
        restriction = self.schema.scoped_filter(hop.target, target_alias) if scoped else None
        if restriction is not None:
            preds.append(restriction)
        return tuple(preds)

    def _join(self, table: str, alias: str, target: Optional[type], on: Tuple[Predicate, ...]) -> "JoinSpec":
        from ..relation import JoinSpec

        return JoinSpec(table=table, on=on, target=target, alias=alias if alias != table else None)

    @staticmethod
    def _fresh_alias(table: str, used: set, index: int) -> str:
        alias = table if table not in used else f"{table}_{index}"
        used.add(alias)
        return alias

    # --- chains ------------------------------------------------------------------------------
    def chain(self, owner_type: type, association: Any) -> Chain:
        """Resolve everything but the owner constraint for a non-polymorphic-belongs_to association."""
        descriptor = self._descriptor(owner_type, association)
        if descriptor.kind == HAS_AND_BELONGS_TO_MANY:
            return self._habtm_chain(owner_type, descriptor)
        hops = self.registry.flatten(owner_type, descriptor)
        if any(h.target is None for h in hops):
            raise ConfigurationError(f"{descriptor.owner}.{descriptor.name} is a polymorphic belongs_to")
        final = hops[-1].target
        if descriptor.is_through and descriptor.target:
            final = self.schema.entity_type(descriptor.target)
        relation = self._relation(final)
        used = {self._table(final)}
        target_alias = self._table(final)
        # walk back from the final hop, joining each hop's owner table;
        # the source table is scoped by the compiler, joined tables here
        for index in range(len(hops) - 1, 0, -1):
            hop = hops[index]
            owner_table = self._table(hop.owner)
            owner_alias = self._fresh_alias(owner_table, used, index)
            on = self._link(hop, owner_alias, target_alias, scoped=False)
            scoped = self.schema.scoped_filter(hop.owner, owner_alias)
            if scoped is not None:
                on += (scoped,)
            relation = relation.add_join(self._join(owner_table, owner_alias, hop.owner, on))
            target_alias = owner_alias
        first = hops[0]
        d = first.descriptor
        if d.kind == BELONGS_TO:
            chain = Chain(relation, ColumnRef(self._pk(first.target), target_alias), d.foreign_key, depth=len(hops))
        elif d.is_polymorphic:
            type_col, id_col = d.polymorphic
            chain = Chain(
                relation, ColumnRef(id_col, target_alias), self._pk(owner_type),
                type_key=ColumnRef(type_col, target_alias), depth=len(hops),
            )
        else:
            chain = Chain(relation, ColumnRef(d.foreign_key, target_alias), self._pk(owner_type), depth=len(hops))
        return replace(chain, relation=self._apply_scopes(chain.relation, hops, descriptor))

    def _habtm_chain(self, owner_type: type, descriptor: AssociationDescriptor) -> Chain:
        target = self.registry.target_type(descriptor)
        jt = descriptor.join_table or naming.join_table_for(self._table(owner_type), self._table(target))
        on = (Predicate.columns_equal(
            ColumnRef(descriptor.association_foreign_key, jt), ColumnRef(self._pk(target), self._table(target)),
        ),)
        relation = self._relation(target).add_join(self._join(jt, jt, None, on))
        relation = self._apply_scopes(relation, [], descriptor)
        return Chain(relation, ColumnRef(descriptor.foreign_key, jt), self._pk(owner_type))

    def _apply_scopes(self, relation: "Relation", hops: List[Hop], descriptor: AssociationDescriptor) -> "Relation":
        for hop in hops:
            if hop.descriptor.scope is not None and hop.descriptor is not descriptor and hop.target is not relation.entity:
                relation = relation.merge(hop.descriptor.scope(self._relation(hop.target)))
        if descriptor.scope is not None:
            relation = relation.merge(descriptor.scope(self._relation(relation.entity)))
        return relation

    # --- per-instance resolution -------------------------------------------------------------
    def relation_for(self, instance: "Entity", association: Any) -> Optional["Relation"]:
        """Relation fetching ``association`` for one source instance.

        Returns ``None`` for a polymorphic ``belongs_to`` whose type column is
        null (there is nothing to point at).
        """
        owner_type = type(instance)
        descriptor = self._descriptor(owner_type, association)
        if descriptor.kind == BELONGS_TO and descriptor.is_polymorphic:
            return self._polymorphic_target(instance, descriptor)
        chain = self.chain(owner_type, descriptor)
        key_value = instance.get(chain.owner_attr)
        if key_value is None:
            # unsaved owner or null foreign key: nothing is related
            condition = Predicate.compare(chain.key, 'in', [])
        else:
            condition = Predicate.compare(chain.key, 'eq', key_value)
        if chain.type_key is not None:
            condition = Predicate.all_of(
                Predicate.compare(chain.type_key, 'eq', self.schema.polymorphic_name(owner_type)), condition,
            )
        relation = chain.relation.add_predicate(condition)
        if descriptor.single:
            relation = relation.limit(1)
        return relation

    def _polymorphic_target(self, instance: "Entity", descriptor: AssociationDescriptor) -> Optional["Relation"]:
        type_col, id_col = descriptor.polymorphic
        type_value = instance.get(type_col)
        if type_value is None:
            return None
        target = self.schema.polymorphic_types.resolve_type(type_value)
        key = ColumnRef(self._pk(target), self._table(target))
        relation = self._relation(target).add_predicate(Predicate.compare(key, 'eq', instance.get(id_col)))
        if descriptor.scope is not None:
            relation = relation.merge(descriptor.scope(self._relation(target)))
        return relation.limit(1)

    # --- joins ---------------------------------------------------------------------------------------
    def join_specs(self, source_type: type, name: str) -> List["JoinSpec"]:
        """Join clauses reaching association ``name`` from ``source_type``'s table."""
        descriptor = self.registry.get(source_type, name)
        source_table = self._table(source_type)
        used = {source_table}
        if descriptor.kind == HAS_AND_BELONGS_TO_MANY:
            target = self.registry.target_type(descriptor)
            jt = descriptor.join_table or naming.join_table_for(source_table, self._table(target))
            jt_alias = self._fresh_alias(jt, used, 1)
            target_alias = self._fresh_alias(self._table(target), used, 2)
            return [
                self._join(jt, jt_alias, None, (Predicate.columns_equal(
                    ColumnRef(descriptor.foreign_key, jt_alias), ColumnRef(self._pk(source_type), source_table),
                ),)),
                self._join(self._table(target), target_alias, target, (Predicate.columns_equal(
                    ColumnRef(self._pk(target), target_alias), ColumnRef(descriptor.association_foreign_key, jt_alias),
                ),)),
            ]
        specs = []
        owner_alias = source_table
        for index, hop in enumerate(self.registry.flatten(source_type, descriptor), start=1):
            if hop.target is None:
                raise ConfigurationError(f"Cannot join polymorphic belongs_to {hop.descriptor.name!r}")
            table = self._table(hop.target)
            alias = self._fresh_alias(table, used, index)
            specs.append(self._join(table, alias, hop.target, self._link(hop, owner_alias, alias)))
            owner_alias = alias
        return specs

    # --- eager batches -----------------------------------------------------------------------------
    async def preload(self, session: "Session", owner_type: type, owners: List["Entity"], path: str) -> None:
        """Load ``path`` (dotted for nested associations) onto every owner in the batch.

        One query per association level regardless of the number of owners;
        polymorphic associations add one query per distinct type involved.
        """
        name, _, rest = path.partition('.')
        owners = [o for o in owners if o is not None]
        if not owners:
            return
        descriptor = self.registry.get(owner_type, name)
        if descriptor.kind == BELONGS_TO and descriptor.is_polymorphic:
            children = await self._preload_polymorphic_target(session, owners, descriptor)
            child_type = None
        else:
            children, child_type = await self._preload_chain(session, owner_type, owners, descriptor)
        if rest and children:
            if child_type is not None:
                await self.preload(session, child_type, children, rest)
            else:
                groups: Dict[type, List[Any]] = defaultdict(list)
                for child in children:
                    groups[self.schema.family_root(type(child))].append(child)
                for group_type, group in groups.items():
                    await self.preload(session, group_type, group, rest)

    async def _preload_chain(self, session: "Session", owner_type: type, owners: List["Entity"], descriptor: AssociationDescriptor):
        chain = self.chain(owner_type, descriptor)
        polymorphic = chain.type_key is not None

        def owner_key(owner: "Entity") -> Tuple[Any, Any]:
            type_name = self.schema.polymorphic_name(type(owner)) if polymorphic else None
            return type_name, owner.get(chain.owner_attr)

        # owners of a single-table family carry several polymorphic names;
        # all of them go into one query, partitioned by (type, key)
        groups: Dict[Any, set] = defaultdict(set)
        for owner in owners:
            type_name, key = owner_key(owner)
            if key is not None:
                groups[type_name].add(key)
        by_key: Dict[Tuple[Any, Any], List[Any]] = defaultdict(list)
        children: List[Any] = []
        if groups:
            conditions = []
            for type_name in sorted(groups, key=str):
                condition = Predicate.compare(chain.key, 'in', sorted(groups[type_name], key=repr))
                if polymorphic:
                    condition = Predicate.all_of(Predicate.compare(chain.type_key, 'eq', type_name), condition)
                conditions.append(condition)
            relation = chain.relation.add_predicate(Predicate.any_of(*conditions))
            relation = relation.with_owner_key(chain.key, chain.type_key)
            logger.debug(
                "eager %s.%s: %d owner key(s)", owner_type.__name__, descriptor.name, sum(map(len, groups.values())),
            )
            for row, entity in await session.fetch_pairs(relation):
                by_key[(row[OWNER_TYPE] if polymorphic else None, row[OWNER_KEY])].append(entity)
                children.append(entity)
        for owner in owners:
            found = by_key.get(owner_key(owner), [])
            owner._attach(descriptor.name, (found[0] if found else None) if descriptor.single else found)
        return children, chain.relation.entity

    async def _preload_polymorphic_target(self, session: "Session", owners: List["Entity"], descriptor: AssociationDescriptor):
        type_col, id_col = descriptor.polymorphic
        by_type: Dict[Any, set] = defaultdict(set)
        for owner in owners:
            if owner.get(type_col) is not None and owner.get(id_col) is not None:
                by_type[owner.get(type_col)].add(owner.get(id_col))
        found: Dict[Tuple[Any, Any], Any] = {}
        children: List[Any] = []
        for type_value in sorted(by_type, key=str):
            target = self.schema.polymorphic_types.resolve_type(type_value)
            key = ColumnRef(self._pk(target), self._table(target))
            relation = self._relation(target).add_predicate(
                Predicate.compare(key, 'in', sorted(by_type[type_value], key=repr))
            )
            if descriptor.scope is not None:
                relation = relation.merge(descriptor.scope(self._relation(target)))
            for entity in await session.fetch(relation.bind(session)):
                found[(type_value, entity.pk)] = entity
                children.append(entity)
        for owner in owners:
            owner._attach(descriptor.name, found.get((owner.get(type_col), owner.get(id_col))))
        return children

    async def preload_all(self, session: "Session", owner_type: type, owners: List["Entity"], paths: Tuple[str, ...]) -> None:
        """Preload several paths; independent paths run concurrently on capable backends."""
        if not owners or not paths:
            return
        if getattr(session.backend, 'supports_concurrency', False) and len(paths) > 1:
            await asyncio.gather(*(self.preload(session, owner_type, owners, p) for p in paths))
            return
        for path in paths:
            await self.preload(session, owner_type, owners, path)
