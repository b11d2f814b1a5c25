import pytest

from berryorm import BackendError, EntityState, PersistenceError, UnknownField
from tests.models import Appointment, Badge, BoyScoutBadge, GirlScoutBadge, Post, Widget


@pytest.mark.asyncio
async def test_save_inserts_and_assigns_primary_key(session):
    widget = Widget(name='delta', size=9)
    assert widget.is_new and widget.is_dirty
    await session.save(widget)
    assert widget.state is EntityState.PERSISTED
    assert widget.id is not None
    assert not widget.is_dirty
    assert widget.session is session

    loaded = await session.find(Widget, widget.id)
    assert loaded == widget
    assert loaded.name == 'delta'


@pytest.mark.asyncio
async def test_save_updates_only_dirty_fields(session, populated_db, query_counter):
    widget = await session.find(Widget, populated_db['widgets'][0].id)
    widget.size = 42
    assert widget.dirty_fields() == {'size'}
    assert widget.changes() == {'size': 42}
    query_counter.reset()
    await session.save(widget)
    assert query_counter.count == 1
    assert 'UPDATE widgets SET size=?' in query_counter.statements[0]
    reloaded = await session.find(Widget, widget.id)
    assert reloaded.size == 42
    assert reloaded.name == 'alpha'


@pytest.mark.asyncio
async def test_saving_clean_entity_is_a_no_op(session, populated_db, query_counter):
    widget = await session.find(Widget, populated_db['widgets'][0].id)
    query_counter.reset()
    await session.save(widget)
    assert query_counter.count == 0


@pytest.mark.asyncio
async def test_primary_key_cannot_change_after_persistence(session, populated_db):
    widget = populated_db['widgets'][0]
    with pytest.raises(PersistenceError):
        widget.id = widget.id + 100


def test_unknown_field_assignment_rejected():
    with pytest.raises(UnknownField):
        Widget(colour='red')
    widget = Widget(name='x')
    with pytest.raises(UnknownField):
        widget.colour = 'red'


@pytest.mark.asyncio
async def test_delete_marks_entity_deleted(session, populated_db):
    gadget = populated_db['gadgets'][2]
    await session.delete(gadget)
    assert gadget.is_deleted
    assert await session.find(type(gadget), gadget.id) is None
    with pytest.raises(PersistenceError):
        await session.save(gadget)


@pytest.mark.asyncio
async def test_delete_of_unsaved_entity_rejected(session):
    with pytest.raises(PersistenceError):
        await session.delete(Widget(name='never saved'))


@pytest.mark.asyncio
async def test_discriminator_written_on_insert(session):
    badge = await session.save(GirlScoutBadge(name='Camping'))
    assert badge.type == 'girl_scout'
    loaded = await session.query(Badge).find(badge.id)
    assert type(loaded) is GirlScoutBadge


@pytest.mark.asyncio
async def test_typed_values_round_trip(session, populated_db):
    post = await session.find(Post, populated_db['posts'][0].id)
    assert post.meta == {'tags': ['hello']}
    appointment = await session.find(Appointment, populated_db['appointments'][1].id)
    assert appointment.confirmed is False


@pytest.mark.asyncio
async def test_count_exists_first_and_iterate(session, populated_db):
    rel = session.query(Widget)
    assert await rel.count() == 3
    assert await rel.where('size', 'gt', 4).count() == 2
    assert await rel.limit(2).count() == 2
    assert await rel.filter_by(name='alpha').exists()
    assert not await rel.filter_by(name='omega').exists()
    first = await rel.first()
    assert first.name == 'alpha'
    last = await rel.order_by('id:desc').first()
    assert last.name == 'gamma'
    names = [w.name async for w in rel.order_by('name')]
    assert names == ['alpha', 'beta', 'gamma']


@pytest.mark.asyncio
async def test_update_all_and_delete_all(session, populated_db):
    changed = await session.query(Widget).where('size', 'gte', 5).update_all(size=0)
    assert changed == 2
    assert await session.query(Widget).filter_by(size=0).count() == 2

    removed = await session.query(BoyScoutBadge).delete_all()
    assert removed == 1
    assert await session.query(Badge).count() == 2


@pytest.mark.asyncio
async def test_bulk_update_through_join(session, populated_db):
    rel = session.query(Widget).join('gadgets').where('gadgets.name', 'eq', 'lever')
    assert await rel.update_all(name='has lever') == 1
    assert [w.name for w in await session.query(Widget).filter_by(name='has lever').all()] == ['has lever']


@pytest.mark.asyncio
async def test_bulk_update_requires_fields(session):
    with pytest.raises(ValueError):
        await session.query(Widget).update_all()


@pytest.mark.asyncio
async def test_backend_failure_is_wrapped(session, populated_db):
    rel = session.query(Widget).filter('no_such_column = ?', 1)
    with pytest.raises(BackendError) as exc:
        await rel.all()
    assert exc.value.original is exc.value.__cause__
    assert 'no_such_column' in exc.value.statement
    # validated references fail before reaching the backend
    with pytest.raises(UnknownField):
        await session.query(Widget).where('no_such_column', 'eq', 1).all()
