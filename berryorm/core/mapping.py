from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.sql.sqltypes import (
    JSON as SA_JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Numeric,
    String,
    Text,
)

from ..errors import ConfigurationError

# Semantic type names accepted in column declarations
SEMANTIC_TYPES: Dict[str, Any] = {
    'integer': Integer,
    'string': String,
    'text': Text,
    'boolean': Boolean,
    'float': Float,
    'decimal': Numeric,
    'date': Date,
    'datetime': DateTime,
    'json': SA_JSON,
}


def sa_type_for(semantic: Any):
    if isinstance(semantic, str):
        try:
            return SEMANTIC_TYPES[semantic.lower()]()
        except KeyError:
            raise ConfigurationError(f"Unknown semantic column type {semantic!r}") from None
    if isinstance(semantic, type) and issubclass(semantic, sa.types.TypeEngine):
        return semantic()
    if isinstance(semantic, sa.types.TypeEngine):
        return semantic
    raise ConfigurationError(f"Unsupported column type {semantic!r}")


def semantic_name_for(sa_type: Any) -> Any:
    """Best semantic name for a SQLAlchemy type; unknown types are kept as-is."""
    # Text before String and DateTime before Date: subclass order matters
    for name in ('text', 'string', 'boolean', 'integer', 'float', 'decimal', 'datetime', 'date', 'json'):
        if isinstance(sa_type, SEMANTIC_TYPES[name]):
            return name
    return sa_type


@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: Any = 'string'
    nullable: bool = True


def column(name: str, type: Any = 'string', *, nullable: bool = True) -> ColumnDef:
    return ColumnDef(name=name, type=type, nullable=nullable)


@dataclass(frozen=True)
class FieldMapping:
    """Static description of how an entity type maps onto a table.

    Attributes:
        table: Table name.
        columns: Ordered column definitions. The primary key column is added
            (as a non-null integer) when missing.
        primary_key: Surrogate key column name.
        discriminator: Column selecting the concrete variant in a
            single-table family, if any.
    """

    table: str
    columns: Tuple[ColumnDef, ...] = ()
    primary_key: str = 'id'
    discriminator: Optional[str] = None
    _index: Dict[str, ColumnDef] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        cols = tuple(c if isinstance(c, ColumnDef) else ColumnDef(*c) for c in self.columns)
        names = [c.name for c in cols]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate column names in mapping for {self.table!r}")
        if self.primary_key not in names:
            cols = (ColumnDef(self.primary_key, 'integer', nullable=False),) + cols
        if self.discriminator is not None and self.discriminator not in [c.name for c in cols]:
            cols = cols + (ColumnDef(self.discriminator, 'string'),)
        object.__setattr__(self, 'columns', cols)
        self._index.update({c.name: c for c in cols})

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def has_column(self, name: str) -> bool:
        return name in self._index

    def column(self, name: str) -> ColumnDef:
        return self._index[name]

    def extend(self, columns: Iterable[ColumnDef]) -> "FieldMapping":
        """Superset mapping on the same table (used by single-table subtypes)."""
        extra = tuple(c if isinstance(c, ColumnDef) else ColumnDef(*c) for c in columns)
        own = [c for c in extra if not self.has_column(c.name)]
        return FieldMapping(
            table=self.table,
            columns=self.columns + tuple(own),
            primary_key=self.primary_key,
            discriminator=self.discriminator,
        )

    def to_table(self, metadata: sa.MetaData) -> sa.Table:
        """Render (or widen) the SQLAlchemy ``Table`` for this mapping in ``metadata``."""
        existing = metadata.tables.get(self.table)
        if existing is not None:
            for c in self.columns:
                if c.name not in existing.c:
                    existing.append_column(sa.Column(c.name, sa_type_for(c.type), nullable=True))
            return existing
        cols = [
            sa.Column(c.name, sa_type_for(c.type), primary_key=(c.name == self.primary_key), nullable=c.nullable)
            for c in self.columns
        ]
        return sa.Table(self.table, metadata, *cols)

    @classmethod
    def from_table(cls, table: sa.Table, *, discriminator: Optional[str] = None) -> "FieldMapping":
        pks = list(table.primary_key.columns)
        if len(pks) != 1:
            raise ConfigurationError(f"Table {table.name!r} must have a single-column primary key")
        return cls(
            table=table.name,
            columns=tuple(ColumnDef(c.name, semantic_name_for(c.type), bool(c.nullable)) for c in table.columns),
            primary_key=pks[0].name,
            discriminator=discriminator,
        )
