import pytest

from berryorm import DetachedRelationError, UnknownField
from tests.models import Gadget, Widget, schema


def test_builder_returns_new_relation():
    base = schema.query(Widget)
    narrowed = base.where('size', 'gt', 3)
    assert narrowed is not base
    assert base.predicates == ()
    assert len(narrowed.predicates) == 1
    # the base is still usable for other derivations
    other = base.filter_by(name='alpha')
    assert len(other.predicates) == 1
    assert base.predicates == ()


def test_repeated_limit_offset_keep_last_values():
    rel = schema.query(Widget).limit(5).offset(3).limit(10).offset(10)
    assert rel.limit_value == 10
    assert rel.offset_value == 10
    stmt = rel.compile()
    assert stmt.text.count('LIMIT') == 1
    assert stmt.text.count('OFFSET') == 1
    assert stmt.params[-2:] == [10, 10]


def test_order_by_and_select_replace():
    rel = schema.query(Widget).order_by('name').order_by('size:desc').select('name').select('size')
    assert [str(o.column) for o in rel.ordering] == ['size']
    assert rel.ordering[0].direction == 'desc'
    assert rel.columns == ('size',)


def test_filters_accumulate():
    rel = schema.query(Widget).filter('size > ?', 1).where('name', 'like', 'a%').filter_by(size=3)
    assert len(rel.predicates) == 3


def test_call_order_does_not_change_compiled_statement():
    a = (
        schema.query(Widget)
        .where('size', 'gt', 2)
        .filter_by(name='alpha')
        .filter('widgets.size < ?', 100)
        .order_by('name')
        .limit(10)
        .offset(5)
    )
    b = (
        schema.query(Widget)
        .offset(5)
        .limit(10)
        .order_by('name')
        .filter('widgets.size < ?', 100)
        .filter_by(name='alpha')
        .where('size', 'gt', 2)
    )
    assert a != b
    assert a.compile() == b.compile()


def test_merge_semantics():
    left = schema.query(Widget).where('size', 'gt', 1).limit(20).offset(2).order_by('name')
    right = schema.query(Widget).where('size', 'lt', 9).limit(5).offset(4).order_by('size')
    merged = left.merge(right)
    assert len(merged.predicates) == 2
    assert merged.limit_value == 5
    assert merged.offset_value == 4
    assert [str(o.column) for o in merged.ordering] == ['size']


def test_merge_keeps_ordering_when_other_has_none():
    merged = schema.query(Widget).order_by('name').merge(schema.query(Widget).limit(3))
    assert [str(o.column) for o in merged.ordering] == ['name']
    assert merged.limit_value == 3


def test_merge_qualifies_other_entity_columns():
    gadget_scope = schema.query(Gadget).where('size', 'gt', 1)
    merged = schema.query(Widget).join('gadgets').merge(gadget_scope)
    text = merged.to_sql()
    assert 'gadgets.size > ?' in text


def test_negative_limit_rejected():
    with pytest.raises(ValueError):
        schema.query(Widget).limit(-1)


def test_placeholder_count_must_match_values():
    with pytest.raises(ValueError):
        schema.query(Widget).filter('size > ? AND size < ?', 1)


def test_unknown_unresolved_mode_rejected():
    with pytest.raises(ValueError):
        schema.query(Widget).on_unresolved('ignore')


def test_unknown_field_raises_at_compile():
    rel = schema.query(Widget).where('colour', 'eq', 'red')
    with pytest.raises(UnknownField) as exc:
        rel.compile()
    assert exc.value.field == 'colour'


def test_entity_field_reference():
    ref = Widget.field('size')
    assert str(ref) == 'widgets.size'
    with pytest.raises(UnknownField):
        Widget.field('colour')
    stmt = schema.query(Widget).where(Widget.field('size'), 'gte', 4).compile()
    assert 'widgets.size >= ?' in stmt.text
    assert stmt.params == [4]


@pytest.mark.asyncio
async def test_terminal_without_session_raises():
    with pytest.raises(DetachedRelationError):
        await schema.query(Widget).all()
    with pytest.raises(DetachedRelationError):
        await schema.query(Widget).count()
