from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .naming import ensure_list

PLACEHOLDER = '?'


@dataclass(frozen=True)
class ColumnRef:
    """Reference to a column, optionally qualified by a table name or alias.

    ``table=None`` means the source table of whatever Relation holds the
    reference; the compiler resolves it and validates the name against the
    matching Field Mapping.
    """

    name: str
    table: Optional[str] = None

    @classmethod
    def parse(cls, raw: Any) -> "ColumnRef":
        if isinstance(raw, ColumnRef):
            return raw
        text = str(raw)
        if '.' in text:
            table, name = text.rsplit('.', 1)
            return cls(name=name, table=table)
        return cls(name=text)

    def qualified(self, table: str) -> "ColumnRef":
        return self if self.table is not None else ColumnRef(self.name, table)

    def __str__(self) -> str:
        return f"{self.table}.{self.name}" if self.table else self.name


def _list_template(col: str, values: Tuple[Any, ...], negate: bool) -> str:
    if not values:
        # Empty IN matches nothing; empty NOT IN matches everything
        return '1 = 1' if negate else '1 = 0'
    marks = ', '.join(PLACEHOLDER for _ in values)
    return f"{col} {'NOT IN' if negate else 'IN'} ({marks})"


# Operator registry: name -> builder(column_sql, values) -> template text.
# Values are bound positionally through PLACEHOLDER markers.
OPERATOR_REGISTRY: Dict[str, Callable[[str, Tuple[Any, ...]], str]] = {
    'eq': lambda col, v: f"{col} = {PLACEHOLDER}",
    'ne': lambda col, v: f"{col} <> {PLACEHOLDER}",
    'lt': lambda col, v: f"{col} < {PLACEHOLDER}",
    'lte': lambda col, v: f"{col} <= {PLACEHOLDER}",
    'gt': lambda col, v: f"{col} > {PLACEHOLDER}",
    'gte': lambda col, v: f"{col} >= {PLACEHOLDER}",
    'like': lambda col, v: f"{col} LIKE {PLACEHOLDER}",
    'not_like': lambda col, v: f"{col} NOT LIKE {PLACEHOLDER}",
    'in': lambda col, v: _list_template(col, v, False),
    'not_in': lambda col, v: _list_template(col, v, True),
    'between': lambda col, v: f"{col} BETWEEN {PLACEHOLDER} AND {PLACEHOLDER}",
    'is_null': lambda col, v: f"{col} IS NULL",
    'not_null': lambda col, v: f"{col} IS NOT NULL",
}

# How many values each operator binds (None: any number)
_ARITY: Dict[str, Optional[int]] = {
    'in': None, 'not_in': None, 'between': 2, 'is_null': 0, 'not_null': 0,
}


def register_operator(name: str, fn: Callable[[str, Tuple[Any, ...]], str], arity: Optional[int] = 1):  # pragma: no cover - simple
    OPERATOR_REGISTRY[name] = fn
    _ARITY[name] = arity


def count_placeholders(template: str) -> int:
    return template.count(PLACEHOLDER)


@dataclass(frozen=True)
class Predicate:
    """One filter fragment.

    Three shapes share this class:

    * raw: ``template`` with ``?`` markers and positional ``values``;
    * column: ``column`` compared through ``op`` with ``values``
      (``other`` set instead of values compares two columns for equality);
    * conjunction: ``parts`` joined with AND (with OR when ``disjunction``).
    """

    template: Optional[str] = None
    values: Tuple[Any, ...] = ()
    column: Optional[ColumnRef] = None
    op: Optional[str] = None
    other: Optional[ColumnRef] = None
    parts: Tuple["Predicate", ...] = ()
    disjunction: bool = False

    @classmethod
    def raw(cls, template: str, *values: Any) -> "Predicate":
        expected = count_placeholders(template)
        if expected != len(values):
            raise ValueError(
                f"Filter {template!r} has {expected} placeholder(s) but {len(values)} value(s) were bound"
            )
        return cls(template=template, values=tuple(values))

    @classmethod
    def compare(cls, column: Any, op: str, value: Any = None) -> "Predicate":
        if op not in OPERATOR_REGISTRY:
            raise ValueError(f"Unknown operator {op!r}")
        ref = ColumnRef.parse(column)
        if op == 'eq' and value is None:
            return cls(column=ref, op='is_null')
        if op == 'ne' and value is None:
            return cls(column=ref, op='not_null')
        arity = _ARITY.get(op, 1)
        if arity == 0:
            values: Tuple[Any, ...] = ()
        elif arity is None:
            values = tuple(ensure_list(value))
        elif arity == 1:
            values = (value,)
        else:
            values = tuple(ensure_list(value))
            if len(values) != arity:
                raise ValueError(f"Operator {op!r} expects {arity} values, got {len(values)}")
        return cls(column=ref, op=op, values=values)

    @classmethod
    def columns_equal(cls, left: Any, right: Any) -> "Predicate":
        return cls(column=ColumnRef.parse(left), op='eq', other=ColumnRef.parse(right))

    @classmethod
    def all_of(cls, *parts: "Predicate") -> "Predicate":
        flat = tuple(p for p in parts if p is not None)
        if len(flat) == 1:
            return flat[0]
        return cls(parts=flat)

    @classmethod
    def any_of(cls, *parts: "Predicate") -> "Predicate":
        flat = tuple(p for p in parts if p is not None)
        if len(flat) == 1:
            return flat[0]
        return cls(parts=flat, disjunction=True)

    def qualified(self, table: str) -> "Predicate":
        """Copy with unqualified column references bound to ``table``."""
        if self.parts:
            return Predicate(parts=tuple(p.qualified(table) for p in self.parts), disjunction=self.disjunction)
        if self.column is None:
            return self
        return Predicate(
            template=self.template,
            values=self.values,
            column=self.column.qualified(table),
            op=self.op,
            other=self.other.qualified(table) if self.other is not None else None,
        )

    @property
    def _joiner(self) -> str:
        return ' OR ' if self.disjunction else ' AND '

    def column_refs(self):
        if self.parts:
            for p in self.parts:
                yield from p.column_refs()
            return
        if self.column is not None:
            yield self.column
        if self.other is not None:
            yield self.other

    def sort_key(self) -> str:
        if self.parts:
            return '(' + self._joiner.join(p.sort_key() for p in self.parts) + ')'
        if self.template is not None:
            return f"raw|{self.template}|{self.values!r}"
        return f"col|{self.column}|{self.op}|{self.other}|{self.values!r}"

    def render(self, quote_column: Callable[[ColumnRef], str]) -> Tuple[str, Tuple[Any, ...]]:
        """Return ``(template, values)`` with column references rendered by ``quote_column``."""
        if self.parts:
            texts = []
            values: Tuple[Any, ...] = ()
            for p in self.parts:
                t, v = p.render(quote_column)
                texts.append(t)
                values += v
            return '(' + self._joiner.join(texts) + ')', values
        if self.template is not None:
            return self.template, self.values
        col = quote_column(self.column)
        if self.other is not None:
            return f"{col} = {quote_column(self.other)}", ()
        return OPERATOR_REGISTRY[self.op](col, self.values), self.values


class Direction(Enum):
    asc = 'asc'
    desc = 'desc'


def dir_value(order_dir: Any) -> str:
    if order_dir is None:
        return 'asc'
    val = str(getattr(order_dir, 'value', order_dir)).strip().lower()
    if val not in ('asc', 'desc'):
        raise ValueError(f"Invalid order direction {order_dir!r}")
    return val


@dataclass(frozen=True)
class OrderSpec:
    column: ColumnRef
    direction: str = 'asc'

    @classmethod
    def parse(cls, raw: Any) -> "OrderSpec":
        """Accept ``"col"``, ``"col:desc"``, ``("col", "desc")`` or an ``OrderSpec``."""
        if isinstance(raw, OrderSpec):
            return raw
        if isinstance(raw, (tuple, list)):
            col, direction = raw
            return cls(ColumnRef.parse(col), dir_value(direction))
        text = str(raw)
        if ':' in text:
            col, direction = text.rsplit(':', 1)
            return cls(ColumnRef.parse(col.strip()), dir_value(direction))
        return cls(ColumnRef.parse(text.strip()))

    def qualified(self, table: str) -> "OrderSpec":
        return OrderSpec(self.column.qualified(table), self.direction)
