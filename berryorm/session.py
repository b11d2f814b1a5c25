"""Session: a finalized Schema bound to an execution backend.

The session runs Relation terminals, resolves associations for loaded
entities and persists single entities. It holds no identity map and no
unit of work: every ``all()`` re-queries, and ``save``/``delete`` write
immediately inside whatever transaction the backend's connection has open.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .backends import Backend, get_backend
from .config import Config
from .core.hydration import Materializer
from .entity import Entity
from .errors import PersistenceError
from .hooks import (
    BEFORE_BULK,
    POST_DELETE,
    POST_PERSIST,
    PRE_DELETE,
    PRE_PERSIST,
    Hooks,
)
from .relation import Relation
from .schema import Schema
from .sql.compiler import CompiledStatement, QueryCompiler

logger = logging.getLogger(__name__)


class Session:
    def __init__(self, schema: Schema, backend: Any, config: Optional[Config] = None, hooks: Optional[Hooks] = None):
        schema.finalize()
        self.schema = schema
        self.backend: Backend = get_backend(backend)
        self.config = config or Config()
        self.hooks = hooks if hooks is not None else Hooks()
        self.compiler = QueryCompiler(schema, self.backend.dialect)
        self.materializer = Materializer(schema, self.config, self.hooks)
        self.resolver = schema.resolver

    # --- building ----------------------------------------------------------------
    def query(self, entity_type: type) -> Relation:
        return self.schema.query(entity_type).bind(self)

    def relation_for(self, instance: Entity, association: Any) -> Optional[Relation]:
        """Relation fetching ``association`` of ``instance`` (None for a null polymorphic target)."""
        relation = self.resolver.relation_for(instance, association)
        return relation.bind(self) if relation is not None else None

    # --- execution ------------------------------------------------------------------
    def _log(self, stmt: CompiledStatement) -> None:
        if self.config.log_statements:
            logger.debug("%s %r", stmt.text, stmt.params)

    async def _rows(self, stmt: CompiledStatement) -> List[Dict[str, Any]]:
        self._log(stmt)
        return await self.backend.execute(stmt.text, stmt.params)

    async def _write(self, stmt: CompiledStatement):
        self._log(stmt)
        return await self.backend.execute_write(stmt.text, stmt.params, returning=stmt.returning)

    async def fetch_pairs(self, relation: Relation) -> List[Tuple[Mapping[str, Any], Entity]]:
        """Execute ``relation`` and keep each row next to its entity. No eager loading."""
        stmt = self.compiler.compile(relation)
        rows = await self._rows(stmt)
        return await self.materializer.materialize_pairs(relation.entity, rows, self, relation.unresolved_mode)

    async def fetch(self, relation: Relation) -> List[Entity]:
        entities = [entity for _, entity in await self.fetch_pairs(relation)]
        if relation.eager and entities:
            await self.resolver.preload_all(self, relation.entity, entities, relation.eager)
        return entities

    async def count(self, relation: Relation) -> int:
        stmt = self.compiler.compile_count(relation)
        self._log(stmt)
        value = await self.backend.execute_scalar(stmt.text, stmt.params)
        return int(value or 0)

    async def update_all(self, relation: Relation, fields: Dict[str, Any]) -> int:
        await self.hooks.fire(BEFORE_BULK, relation, 'update', dict(fields))
        values = self.materializer.dump(relation.entity, fields)
        result = await self._write(self.compiler.compile_update(relation, values))
        return result.rowcount

    async def delete_all(self, relation: Relation) -> int:
        await self.hooks.fire(BEFORE_BULK, relation, 'delete', None)
        result = await self._write(self.compiler.compile_delete(relation))
        return result.rowcount

    # --- eager loading ------------------------------------------------------------------
    async def preload(self, entities: List[Entity], *paths: str) -> List[Entity]:
        """Attach ``paths`` to already loaded entities, one query per association."""
        groups: Dict[type, List[Entity]] = defaultdict(list)
        for entity in entities:
            groups[self.schema.family_root(type(entity))].append(entity)
        for owner_type, owners in groups.items():
            await self.resolver.preload_all(self, owner_type, owners, tuple(paths))
        return entities

    # --- single-entity persistence --------------------------------------------------------
    async def find(self, entity_type: type, pk: Any) -> Optional[Entity]:
        return await self.query(entity_type).find(pk)

    async def save(self, entity: Entity) -> Entity:
        """INSERT a new entity or UPDATE the dirty fields of a persisted one."""
        if entity.is_deleted:
            raise PersistenceError(f"Cannot save deleted {type(entity).__name__} {entity.pk!r}")
        entity_type = type(entity)
        if entity.is_persisted and not entity.is_dirty:
            return entity
        await self.hooks.fire(PRE_PERSIST, entity, self)
        created = entity.is_new
        if created:
            await self._insert(entity_type, entity)
        else:
            await self._update(entity_type, entity)
        await self.hooks.fire(POST_PERSIST, entity, self)
        logger.debug("%s %s %r", 'inserted' if created else 'updated', entity_type.__name__, entity.pk)
        return entity

    async def _insert(self, entity_type: type, entity: Entity) -> None:
        mapping = self.schema.mapping_for(entity_type)
        resolver = self.schema.type_resolver_for(entity_type)
        if resolver is not None:
            setattr(entity, mapping.discriminator, resolver.discriminator_for(entity_type))
        values = self.materializer.dump(entity_type, entity.changes())
        result = await self._write(self.compiler.compile_insert(entity_type, values))
        pk = entity.pk if entity.pk is not None else result.last_id
        entity._mark_persisted(pk, self)

    async def _update(self, entity_type: type, entity: Entity) -> None:
        values = self.materializer.dump(entity_type, entity.changes())
        result = await self._write(self.compiler.compile_update_entity(entity_type, entity.pk, values))
        if result.rowcount == 0:
            raise PersistenceError(f"{entity_type.__name__} {entity.pk!r} no longer exists")
        entity._mark_persisted(session=self)

    async def delete(self, entity: Entity) -> Entity:
        if entity.is_new:
            raise PersistenceError(f"Cannot delete unsaved {type(entity).__name__}")
        if entity.is_deleted:
            return entity
        await self.hooks.fire(PRE_DELETE, entity, self)
        await self._write(self.compiler.compile_delete_entity(type(entity), entity.pk))
        entity._mark_deleted()
        await self.hooks.fire(POST_DELETE, entity, self)
        return entity

    def __repr__(self) -> str:
        return f"<Session schema={self.schema.name} backend={self.backend!r}>"
