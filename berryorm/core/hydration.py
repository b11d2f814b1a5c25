from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.sql.sqltypes import JSON, Boolean, Date, DateTime

from ..errors import UnknownDiscriminator

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..config import Config
    from ..entity import Entity
    from ..hooks import Hooks
    from ..schema import Schema
    from ..session import Session

logger = logging.getLogger(__name__)


class Materializer:
    """Turns backend rows into entity instances.

    For every row it:
      - resolves the concrete type through the family's discriminator, when
        the queried type belongs to a single-table family
      - copies the mapped columns of the resolved type present in the row
        (extra columns such as eager owner keys are left out)
      - coerces text-encoded values of datetime, date, boolean and JSON
        columns, since statements run without driver-side type processing
      - marks the instance persisted and binds the session
      - fires ``after_materialize``

    Rows whose discriminator does not resolve fail the whole batch in
    ``fail`` mode, or are dropped with a warning in ``skip`` mode.
    """

    # Key: (table, column), Value: coercion kind or None
    _kind_cache: Dict[Tuple[str, str], Optional[str]]

    def __init__(self, schema: "Schema", config: Optional["Config"] = None, hooks: Optional["Hooks"] = None):
        self.schema = schema
        self.config = config
        self.hooks = hooks
        self._kind_cache = {}

    def _mode(self, mode: Optional[str]) -> str:
        if mode is not None:
            return mode
        return self.config.on_unresolved_type if self.config is not None else 'fail'

    # ----- value coercion -----
    def _kind(self, entity_type: type, key: str) -> Optional[str]:
        table = self.schema.table_for(entity_type)
        cache_key = (table.name, key)
        if cache_key not in self._kind_cache:
            col = table.c.get(key)
            col_type = getattr(col, 'type', None)
            kind = None
            if isinstance(col_type, DateTime):
                kind = 'datetime'
            elif isinstance(col_type, Date):
                kind = 'date'
            elif isinstance(col_type, Boolean):
                kind = 'boolean'
            elif isinstance(col_type, JSON):
                kind = 'json'
            self._kind_cache[cache_key] = kind
        return self._kind_cache[cache_key]

    def coerce(self, entity_type: type, key: str, value: Any) -> Any:
        if value is None:
            return value
        kind = self._kind(entity_type, key)
        if kind == 'datetime' and isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return datetime.fromisoformat(value.replace(' ', 'T'))
        if kind == 'date' and isinstance(value, str):
            return date.fromisoformat(value[:10])
        if kind == 'boolean' and isinstance(value, int):
            return bool(value)
        if kind == 'json' and isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    def dump(self, entity_type: type, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Inverse of :meth:`coerce` for values bound into write statements."""
        out: Dict[str, Any] = {}
        for key, value in values.items():
            if value is not None and self._kind(entity_type, key) == 'json' and not isinstance(value, (str, bytes)):
                value = json.dumps(value)
            out[key] = value
        return out

    # ----- rows -----
    def resolve(self, entity_type: type, row: Mapping[str, Any]) -> type:
        """Concrete type for ``row`` when queried as ``entity_type``."""
        resolver = self.schema.type_resolver_for(entity_type)
        if resolver is None:
            return entity_type
        mapping = self.schema.mapping_for(entity_type)
        return resolver.resolve_type(row.get(mapping.discriminator))

    def build(self, entity_type: type, row: Mapping[str, Any], session: Optional["Session"] = None) -> "Entity":
        concrete = self.resolve(entity_type, row)
        mapping = self.schema.mapping_for(concrete)
        values = {name: self.coerce(concrete, name, row[name]) for name in mapping.column_names if name in row}
        instance = concrete()
        instance._load_row(values, session)
        return instance

    async def materialize_pairs(
        self,
        entity_type: type,
        rows: List[Mapping[str, Any]],
        session: Optional["Session"] = None,
        mode: Optional[str] = None,
    ) -> List[Tuple[Mapping[str, Any], "Entity"]]:
        """Like :meth:`materialize` but keeps each source row next to its entity."""
        mode = self._mode(mode)
        pairs: List[Tuple[Mapping[str, Any], "Entity"]] = []
        for row in rows:
            try:
                instance = self.build(entity_type, row, session)
            except UnknownDiscriminator as exc:
                if mode == 'fail':
                    raise
                logger.warning("skipping %s row: %s", entity_type.__name__, exc)
                continue
            pairs.append((row, instance))
        if self.hooks:
            for _, instance in pairs:
                await self.hooks.fire('after_materialize', instance, session)
        return pairs

    async def materialize(
        self,
        entity_type: type,
        rows: List[Mapping[str, Any]],
        session: Optional["Session"] = None,
        mode: Optional[str] = None,
    ) -> List["Entity"]:
        return [entity for _, entity in await self.materialize_pairs(entity_type, rows, session, mode)]
