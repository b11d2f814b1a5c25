from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from . import naming

BELONGS_TO = 'belongs_to'
HAS_ONE = 'has_one'
HAS_MANY = 'has_many'
HAS_MANY_THROUGH = 'has_many_through'
HAS_AND_BELONGS_TO_MANY = 'has_and_belongs_to_many'

KINDS = (BELONGS_TO, HAS_ONE, HAS_MANY, HAS_MANY_THROUGH, HAS_AND_BELONGS_TO_MANY)

PolymorphicSpec = Union[bool, str, Tuple[str, str], None]


@dataclass(frozen=True)
class AssociationDescriptor:
    """Normalized, immutable linkage metadata for one declared association.

    Attributes:
        name: Association name on the owning type (e.g. "gadgets").
        kind: One of :data:`KINDS`.
        owner: Name of the declaring entity type.
        target: Name of the target entity type; ``None`` for a polymorphic
            ``belongs_to`` whose target is read from the row.
        foreign_key: Link column. Lives on the owner for ``belongs_to`` and on
            the target for ``has_one``/``has_many``; the owner-side key in the
            join table for many-to-many.
        join_table: Many-to-many join table name.
        association_foreign_key: Target-side key in the join table.
        through: Intermediate association name for ``has_many_through``.
        source: Association on the intermediate type to follow; defaults to
            this association's name or its singular.
        polymorphic: ``(type_column, id_column)`` pair replacing a fixed
            foreign key.
        scope: Optional callable ``relation -> relation`` merged into the
            resolved Relation.
    """

    name: str
    kind: str
    owner: str
    target: Optional[str] = None
    foreign_key: Optional[str] = None
    join_table: Optional[str] = None
    association_foreign_key: Optional[str] = None
    through: Optional[str] = None
    source: Optional[str] = None
    polymorphic: Optional[Tuple[str, str]] = None
    scope: Optional[Callable[[Any], Any]] = None

    @property
    def single(self) -> bool:
        return self.kind in (BELONGS_TO, HAS_ONE)

    @property
    def is_polymorphic(self) -> bool:
        return self.polymorphic is not None

    @property
    def is_through(self) -> bool:
        return self.kind == HAS_MANY_THROUGH


class AssociationField:
    """Descriptor placed on entity classes to declare an association.

    Users normally call :func:`belongs_to`, :func:`has_one`, :func:`has_many`
    or :func:`has_and_belongs_to_many`, which return an ``AssociationField``.
    When the owning class is registered with a schema, the field is converted
    into an :class:`AssociationDescriptor` and stays on the class as the
    generated accessor: reading it on an instance returns the eager-loaded
    value when present, otherwise a Relation that fetches it.
    """

    def __init__(self, *, kind: str, **meta):
        self.kind = kind
        self.meta = dict(meta)
        self.name: str | None = None

    def __set_name__(self, owner, name):  # pragma: no cover - simple
        self.name = name

    def build(self, owner_name: str, name: Optional[str] = None) -> AssociationDescriptor:
        name = name or self.name or ''
        meta = dict(self.meta)
        poly = _normalize_polymorphic(meta.pop('polymorphic', None), name)
        fk = meta.pop('foreign_key', None)
        afk = meta.pop('association_foreign_key', None)
        target = meta.pop('target', None)
        if self.kind == BELONGS_TO:
            if poly is None:
                fk = fk or naming.foreign_key_for(name)
                target = target or naming.class_name_for(name)
        elif self.kind in (HAS_ONE, HAS_MANY):
            target = target or naming.class_name_for(name)
            if poly is None:
                fk = fk or naming.foreign_key_for(owner_name)
        elif self.kind == HAS_AND_BELONGS_TO_MANY:
            target = target or naming.class_name_for(name)
            fk = fk or naming.foreign_key_for(owner_name)
            afk = afk or naming.foreign_key_for(target)
        return AssociationDescriptor(
            name=name,
            kind=self.kind,
            owner=owner_name,
            target=target,
            foreign_key=fk,
            association_foreign_key=afk,
            polymorphic=poly,
            **meta,
        )

    def __get__(self, instance, owner):
        if instance is None:
            return self
        name = self.name or ''
        if instance.is_loaded(name):
            return instance.loaded(name)
        return instance.association(name)


def _normalize_polymorphic(spec: PolymorphicSpec, name: str) -> Optional[Tuple[str, str]]:
    if not spec:
        return None
    if spec is True:
        return naming.polymorphic_columns(name)
    if isinstance(spec, str):
        return naming.polymorphic_columns(spec)
    type_col, id_col = spec
    return str(type_col), str(id_col)


def _target_name(target: Any) -> Optional[str]:
    if target is None:
        return None
    return target if isinstance(target, str) else target.__name__


def belongs_to(
    target: Any = None,
    *,
    foreign_key: Optional[str] = None,
    polymorphic: PolymorphicSpec = None,
    scope: Optional[Callable[[Any], Any]] = None,
) -> AssociationField:
    """Declare that the owner row points at one target row.

    Args:
        target: Target entity class or its name. Defaults to the camelized
            association name. Ignored for polymorphic associations.
        foreign_key: Column on the owner holding the target's primary key.
            Defaults to ``<name>_id``.
        polymorphic: ``True`` to read ``<name>_type``/``<name>_id``, or an
            explicit prefix / ``(type_column, id_column)`` pair.
        scope: Callable ``relation -> relation`` narrowing the target query.

    Example:
        class Gadget(Entity):
            widget = belongs_to('Widget')

        class Control(Entity):
            displayable = belongs_to(polymorphic=True)
    """
    meta: Dict[str, Any] = {'foreign_key': foreign_key, 'polymorphic': polymorphic, 'scope': scope}
    if not polymorphic:
        meta['target'] = _target_name(target)
    return AssociationField(kind=BELONGS_TO, **meta)


def has_many(
    target: Any = None,
    *,
    foreign_key: Optional[str] = None,
    through: Optional[str] = None,
    source: Optional[str] = None,
    as_: Optional[str] = None,
    scope: Optional[Callable[[Any], Any]] = None,
) -> AssociationField:
    """Declare a one-to-many association, direct or ``through`` another one.

    Args:
        target: Target entity class or name. Optional for ``through``
            associations, where it is inferred from the chain.
        foreign_key: Column on the target pointing back at the owner.
            Defaults to ``<owner>_id``.
        through: Name of an association on the owner to traverse first.
        source: Association on the intermediate type to follow.
        as_: Polymorphic interface name on the target; the target carries
            ``<as_>_type``/``<as_>_id`` instead of a foreign key.
        scope: Callable ``relation -> relation`` narrowing the target query.

    Example:
        class Widget(Entity):
            gadgets = has_many('Gadget')
            controls = has_many('Control', as_='displayable')

        class Physician(Entity):
            appointments = has_many('Appointment')
            patients = has_many('Patient', through='appointments')
    """
    if through is not None:
        return AssociationField(
            kind=HAS_MANY_THROUGH, target=_target_name(target), through=through, source=source, scope=scope,
        )
    return AssociationField(
        kind=HAS_MANY, target=_target_name(target), foreign_key=foreign_key, polymorphic=as_, scope=scope,
    )


def has_one(
    target: Any = None,
    *,
    foreign_key: Optional[str] = None,
    as_: Optional[str] = None,
    scope: Optional[Callable[[Any], Any]] = None,
) -> AssociationField:
    """Like :func:`has_many` but resolves to at most one target row."""
    return AssociationField(
        kind=HAS_ONE, target=_target_name(target), foreign_key=foreign_key, polymorphic=as_, scope=scope,
    )


def has_and_belongs_to_many(
    target: Any,
    *,
    join_table: Optional[str] = None,
    foreign_key: Optional[str] = None,
    association_foreign_key: Optional[str] = None,
    scope: Optional[Callable[[Any], Any]] = None,
) -> AssociationField:
    """Declare a many-to-many association through a bare join table.

    The join table holds only the two key columns: ``foreign_key`` (owner
    side, default ``<owner>_id``) and ``association_foreign_key`` (target
    side, default ``<target>_id``). Its name defaults to both table names
    sorted and joined with an underscore.
    """
    return AssociationField(
        kind=HAS_AND_BELONGS_TO_MANY,
        target=_target_name(target),
        join_table=join_table,
        foreign_key=foreign_key,
        association_foreign_key=association_foreign_key,
        scope=scope,
    )
