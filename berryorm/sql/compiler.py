from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.dialects import sqlite

from ..core.filters import ColumnRef, Predicate
from ..errors import ConfigurationError, UnknownField

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..relation import Relation
    from ..schema import Schema

# Labels of the extra columns carrying the owning row's key and polymorphic type in eager batches
OWNER_KEY = 'berry_owner_key'
OWNER_TYPE = 'berry_owner_type'


@dataclass(frozen=True)
class CompiledStatement:
    """Parameterized statement text plus its positional bound values."""

    text: str
    params: List[Any] = field(default_factory=list)
    returning: bool = False

    def __str__(self) -> str:
        return self.text


class _Scope:
    """Tables visible to one statement: the source table and every join, keyed by alias."""

    def __init__(self, compiler: "QueryCompiler", relation: "Relation"):
        schema = compiler.schema
        self.compiler = compiler
        self.entity_name = relation.entity.__name__
        self.source_alias = relation.alias
        self.source = schema.table_for(relation.entity)
        self.froms: Dict[str, Any] = {self.source_alias: self.source}
        # None: columns of that table are not known and not validated
        self.known: Dict[str, Optional[set]] = {self.source_alias: set(self.source.c.keys())}
        for join in relation.joins:
            if join.target is not None:
                table = schema.table_for(join.target)
                known: Optional[set] = set(table.c.keys())
            else:
                table = schema.metadata.tables.get(join.table)
                if table is None:
                    table = sa.table(join.table)
                    known = None
                else:
                    known = set(table.c.keys())
            if join.alias and join.alias != join.table:
                table = table.alias(join.alias)
            self.froms[join.name] = table
            self.known[join.name] = known

    def _check(self, ref: ColumnRef) -> str:
        alias = ref.table or self.source_alias
        if alias not in self.froms:
            raise UnknownField(self.entity_name, str(ref))
        known = self.known[alias]
        if known is not None and ref.name not in known:
            owner = self.entity_name if alias == self.source_alias else alias
            raise UnknownField(owner, ref.name)
        return alias

    def quote(self, ref: ColumnRef) -> str:
        alias = self._check(ref)
        q = self.compiler.dialect.identifier_preparer.quote
        return f"{q(alias)}.{q(ref.name)}"

    def column(self, ref: ColumnRef):
        alias = self._check(ref)
        table = self.froms[alias]
        if self.known[alias] is None:
            return sa.literal_column(self.quote(ref))
        return table.c[ref.name]


class _Binder:
    """Turns rendered predicate templates into ``text()`` clauses with unique bind names."""

    def __init__(self):
        self.counter = 0

    def text(self, template: str, values: Tuple[Any, ...]):
        out: List[str] = []
        binds: Dict[str, Any] = {}
        it = iter(values)
        prev = ''
        for ch in template:
            if ch == ':':
                out.append('\\:')
            elif ch == '?':
                name = f"b{self.counter}"
                self.counter += 1
                binds[name] = next(it)
                # a bind name glued to a word character is not recognized by text()
                if prev.isalnum() or prev == '_':
                    out.append(' ')
                out.append(':' + name)
            else:
                out.append(ch)
            prev = ch
        clause = sa.text(''.join(out))
        if binds:
            clause = clause.bindparams(**binds)
        return clause


class QueryCompiler:
    """Compiles Relations into parameterized statements through SQLAlchemy Core.

    Output is deterministic: predicates are emitted in canonical order, and
    joins, grouping, ordering, limit and offset take fixed positions in the
    statement, so Relations holding the same fragments compile to the same
    text and values whatever order the builder calls were made in.

    Statements compile against a positional dialect (``?``, ``$1``...), by
    default SQLite's; pass the backend's dialect to target another database.
    """

    def __init__(self, schema: "Schema", dialect=None):
        self.schema = schema
        self.dialect = dialect if dialect is not None else sqlite.dialect()
        if not getattr(self.dialect, 'positional', False):
            raise ConfigurationError(
                f"Dialect {self.dialect.name!r} uses named parameters; a positional paramstyle is required"
            )

    # --- helpers -------------------------------------------------------------
    def _conditions(self, relation: "Relation", scope: _Scope, binder: _Binder) -> list:
        preds: List[Predicate] = list(relation.predicates)
        scoped = self.schema.scoped_filter(relation.entity)
        if scoped is not None:
            preds.append(scoped)
        preds.sort(key=lambda p: p.sort_key())
        return [binder.text(*p.render(scope.quote)) for p in preds]

    def _from_clause(self, relation: "Relation", scope: _Scope, binder: _Binder):
        from_ = scope.source
        for join in relation.joins:
            on = [binder.text(*p.render(scope.quote)) for p in join.on]
            from_ = from_.join(scope.froms[join.name], sa.and_(*on), isouter=join.outer)
        return from_

    def _projection(self, relation: "Relation", scope: _Scope) -> list:
        mapping = self.schema.mapping_for(relation.entity)
        if relation.columns is None:
            names = list(scope.source.c.keys())
        else:
            names = list(relation.columns)
            # Primary key and discriminator are always needed to materialize
            for required in (mapping.discriminator, mapping.primary_key):
                if required and required not in names:
                    names.insert(0, required)
        cols = [scope.column(ColumnRef.parse(n).qualified(scope.source_alias)) for n in names]
        if relation.owner_key is not None:
            cols.append(scope.column(relation.owner_key).label(OWNER_KEY))
        if relation.owner_type_key is not None:
            cols.append(scope.column(relation.owner_type_key).label(OWNER_TYPE))
        return cols

    def _select(self, relation: "Relation", columns=None):
        scope = _Scope(self, relation)
        binder = _Binder()
        from_ = self._from_clause(relation, scope, binder)
        cols = columns(scope) if columns is not None else self._projection(relation, scope)
        stmt = sa.select(*cols).select_from(from_)
        conditions = self._conditions(relation, scope, binder)
        if conditions:
            stmt = stmt.where(*conditions)
        if relation.grouping:
            stmt = stmt.group_by(*[scope.column(g) for g in relation.grouping])
        if relation.ordering:
            order = []
            for spec in relation.ordering:
                col = scope.column(spec.column)
                order.append(col.desc() if spec.direction == 'desc' else col.asc())
            stmt = stmt.order_by(*order)
        if relation.limit_value is not None:
            stmt = stmt.limit(relation.limit_value)
        if relation.offset_value is not None:
            stmt = stmt.offset(relation.offset_value)
        return stmt

    def _needs_subquery(self, relation: "Relation") -> bool:
        return bool(
            relation.joins or relation.grouping
            or relation.limit_value is not None or relation.offset_value is not None
        )

    def _bulk_where(self, relation: "Relation"):
        """WHERE criteria for bulk UPDATE/DELETE against the bare source table."""
        table = self.schema.table_for(relation.entity)
        pk = table.c[self.schema.mapping_for(relation.entity).primary_key]
        if self._needs_subquery(relation):
            inner = self._select(relation, columns=lambda scope: [scope.source.c[pk.key]])
            return [pk.in_(inner.correlate(None).scalar_subquery())]
        scope = _Scope(self, relation)
        return self._conditions(relation, scope, _Binder())

    def _finish(self, stmt, *, returning: bool = False) -> CompiledStatement:
        compiled = stmt.compile(dialect=self.dialect)
        names = compiled.positiontup or []
        params = [compiled.params[name] for name in names]
        return CompiledStatement(text=str(compiled), params=params, returning=returning)

    # --- public API ------------------------------------------------------------------
    def compile(self, relation: "Relation") -> CompiledStatement:
        return self._finish(self._select(relation))

    def compile_count(self, relation: "Relation") -> CompiledStatement:
        if relation.grouping or relation.limit_value is not None or relation.offset_value is not None:
            inner = self._select(relation).subquery()
            stmt = sa.select(sa.func.count()).select_from(inner)
        else:
            # a bare count carries no ORDER BY
            stmt = self._select(replace(relation, ordering=()), columns=lambda scope: [sa.func.count()])
        return self._finish(stmt)

    def compile_update(self, relation: "Relation", fields: Dict[str, Any]) -> CompiledStatement:
        table = self.schema.table_for(relation.entity)
        values = {}
        for name, value in fields.items():
            if name not in table.c:
                raise UnknownField(relation.entity.__name__, name)
            values[table.c[name]] = value
        stmt = sa.update(table).values(values)
        where = self._bulk_where(relation)
        if where:
            stmt = stmt.where(*where)
        return self._finish(stmt)

    def compile_delete(self, relation: "Relation") -> CompiledStatement:
        table = self.schema.table_for(relation.entity)
        stmt = sa.delete(table)
        where = self._bulk_where(relation)
        if where:
            stmt = stmt.where(*where)
        return self._finish(stmt)

    def compile_insert(self, entity_type: type, values: Dict[str, Any]) -> CompiledStatement:
        table = self.schema.table_for(entity_type)
        mapping = self.schema.mapping_for(entity_type)
        for name in values:
            if name not in table.c:
                raise UnknownField(entity_type.__name__, name)
        stmt = sa.insert(table).values({table.c[k]: v for k, v in values.items()})
        returning = bool(getattr(self.dialect, 'insert_returning', False))
        if returning:
            stmt = stmt.returning(table.c[mapping.primary_key])
        return self._finish(stmt, returning=returning)

    def compile_update_entity(self, entity_type: type, pk: Any, values: Dict[str, Any]) -> CompiledStatement:
        table = self.schema.table_for(entity_type)
        key = table.c[self.schema.mapping_for(entity_type).primary_key]
        for name in values:
            if name not in table.c:
                raise UnknownField(entity_type.__name__, name)
        stmt = sa.update(table).where(key == pk).values({table.c[k]: v for k, v in values.items()})
        return self._finish(stmt)

    def compile_delete_entity(self, entity_type: type, pk: Any) -> CompiledStatement:
        table = self.schema.table_for(entity_type)
        key = table.c[self.schema.mapping_for(entity_type).primary_key]
        return self._finish(sa.delete(table).where(key == pk))
