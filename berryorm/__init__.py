"""berryorm public API with lazy exports.

Importing the package stays cheap: submodules load on first attribute
access, so model modules can import ``berryorm`` helpers without pulling in
the session and backend layers.

Exposes:
- Schema, Session, Entity, EntityState, Relation, JoinSpec, Config, Hooks
- column, belongs_to, has_one, has_many, has_and_belongs_to_many
- Predicate, ColumnRef, TypeResolver, Materializer, QueryCompiler
- SQLAlchemyBackend, Backend, WriteResult
- the error classes from ``berryorm.errors``
"""
from __future__ import annotations

_EXPORTS = {
    'Schema': 'schema',
    'Session': 'session',
    'Entity': 'entity',
    'EntityState': 'entity',
    'Relation': 'relation',
    'JoinSpec': 'relation',
    'Config': 'config',
    'Hooks': 'hooks',
    'column': 'core.mapping',
    'ColumnDef': 'core.mapping',
    'FieldMapping': 'core.mapping',
    'belongs_to': 'core.fields',
    'has_one': 'core.fields',
    'has_many': 'core.fields',
    'has_and_belongs_to_many': 'core.fields',
    'AssociationDescriptor': 'core.fields',
    'Predicate': 'core.filters',
    'ColumnRef': 'core.filters',
    'TypeResolver': 'core.types',
    'Materializer': 'core.hydration',
    'QueryCompiler': 'sql.compiler',
    'CompiledStatement': 'sql.compiler',
    'Backend': 'backends',
    'WriteResult': 'backends',
    'SQLAlchemyBackend': 'backends',
    'BerryORMError': 'errors',
    'ConfigurationError': 'errors',
    'UnmappedType': 'errors',
    'CyclicAssociation': 'errors',
    'UnknownField': 'errors',
    'UnknownAssociation': 'errors',
    'UnknownDiscriminator': 'errors',
    'UnregisteredType': 'errors',
    'BackendError': 'errors',
    'DetachedRelationError': 'errors',
    'PersistenceError': 'errors',
}


def __getattr__(name: str):  # PEP 562 lazy exports
    import importlib as _importlib

    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(_importlib.import_module(f"{__name__}.{module}"), name)


__all__ = list(_EXPORTS)
