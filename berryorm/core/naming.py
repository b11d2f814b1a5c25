from __future__ import annotations

from typing import Iterable, List

import inflection

__all__ = [
    'table_name_for',
    'class_name_for',
    'foreign_key_for',
    'polymorphic_columns',
    'join_table_for',
    'source_candidates',
    'ensure_list',
]


def table_name_for(class_name: str) -> str:
    """Default table name for an entity class (``BoyScoutBadge`` -> ``boy_scout_badges``)."""
    return inflection.tableize(class_name)


def class_name_for(name: str) -> str:
    """Entity class name implied by an association name (``line_items`` -> ``LineItem``)."""
    return inflection.camelize(inflection.singularize(name))


def foreign_key_for(name: str) -> str:
    """Foreign key column pointing at ``name`` (class or association name)."""
    return inflection.underscore(inflection.singularize(name)) + '_id'


def polymorphic_columns(name: str) -> tuple[str, str]:
    base = inflection.underscore(name)
    return f"{base}_type", f"{base}_id"


def join_table_for(left_table: str, right_table: str) -> str:
    """Default many-to-many join table: both table names, sorted, joined by ``_``."""
    return '_'.join(sorted((left_table, right_table)))


def source_candidates(name: str) -> List[str]:
    """Association names tried on the intermediate type of a ``through`` chain."""
    singular = inflection.singularize(name)
    return [name] if singular == name else [name, singular]


def ensure_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
        return list(value)
    return [value]
