from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from berryorm import Session, SQLAlchemyBackend
from berryorm.core import associations
from tests.models import (
    Author,
    Badge,
    BoyScoutBadge,
    Control,
    Gadget,
    Physician,
    Post,
    Scout,
    Widget,
    schema,
)


@pytest.mark.asyncio
async def test_eager_two_associations_issue_two_extra_queries(session, populated_db, query_counter):
    query_counter.reset()
    widgets = await session.query(Widget).eager_load('gadgets', 'controls').order_by('id').all()
    assert query_counter.count == 3, query_counter.statements

    alpha, beta, gamma = widgets
    assert sorted(g.name for g in alpha.gadgets) == ['dial', 'knob']
    assert [g.name for g in beta.gadgets] == ['lever']
    assert gamma.gadgets == []
    assert [c.label for c in alpha.controls] == ['on']
    assert gamma.controls == []
    # reading loaded associations issues nothing
    assert query_counter.count == 3


@pytest.mark.asyncio
async def test_eager_has_one_attaches_single_value(session, populated_db, query_counter):
    query_counter.reset()
    widgets = await session.query(Widget).eager_load('largest_gadget').order_by('id').all()
    assert query_counter.count == 2
    assert widgets[0].largest_gadget.name == 'dial'
    assert widgets[1].largest_gadget.name == 'lever'
    assert widgets[2].largest_gadget is None


@pytest.mark.asyncio
async def test_eager_belongs_to(session, populated_db, query_counter):
    query_counter.reset()
    gadgets = await session.query(Gadget).eager_load('widget').order_by('id').all()
    assert query_counter.count == 2
    assert [g.widget.name for g in gadgets] == ['alpha', 'alpha', 'beta']


@pytest.mark.asyncio
async def test_eager_polymorphic_belongs_to_queries_once_per_type(session, populated_db, query_counter):
    query_counter.reset()
    controls = await session.query(Control).eager_load('displayable').order_by('id').all()
    # controls, then one batch for Gadget and one for Widget
    assert query_counter.count == 3
    on, off, reset, orphan = controls
    assert isinstance(on.displayable, Widget) and on.displayable.name == 'alpha'
    assert off.displayable.name == 'beta'
    assert isinstance(reset.displayable, Gadget)
    assert orphan.displayable is None


@pytest.mark.asyncio
async def test_eager_nested_path_loads_level_by_level(session, populated_db, query_counter):
    query_counter.reset()
    authors = await session.query(Author).eager_load('posts.comments').order_by('id').all()
    assert query_counter.count == 3
    ada = authors[0]
    assert sorted(p.title for p in ada.posts) == ['Deep dive', 'Intro']
    bodies = sorted(c.body for p in ada.posts for c in p.comments)
    assert bodies == ['meh', 'nice']


@pytest.mark.asyncio
async def test_eager_through_chain_partitions_by_owner_key(session, populated_db, query_counter):
    query_counter.reset()
    physicians = await session.query(Physician).eager_load('patients').order_by('id').all()
    assert query_counter.count == 2
    house, wilson = physicians
    assert sorted(p.name for p in house.patients) == ['Ann', 'Ben']
    assert [p.name for p in wilson.patients] == ['Cy']


@pytest.mark.asyncio
async def test_eager_depth_three_through_chain(session, populated_db, query_counter):
    query_counter.reset()
    authors = await session.query(Author).eager_load('commenters').order_by('id').all()
    assert query_counter.count == 2
    assert sorted(u.name for u in authors[0].commenters) == ['Uma', 'Vic']
    assert [u.name for u in authors[1].commenters] == ['Uma']


@pytest.mark.asyncio
async def test_eager_many_to_many(session, populated_db, query_counter):
    query_counter.reset()
    posts = await session.query(Post).eager_load('tags').order_by('id').all()
    assert query_counter.count == 2
    intro, deep, other = posts
    assert sorted(t.name for t in intro.tags) == ['python', 'sql']
    assert deep.tags == []
    assert [t.name for t in other.tags] == ['sql']


@pytest.mark.asyncio
async def test_eager_children_of_single_table_family_are_typed(session, populated_db):
    scouts = await session.query(Scout).eager_load('badges').order_by('id').all()
    sam = scouts[0]
    assert any(isinstance(b, BoyScoutBadge) for b in sam.badges)
    assert sorted(b.name for b in sam.badges) == ['Generic', 'Knots']


@pytest.mark.asyncio
async def test_session_preload_on_loaded_entities(session, populated_db, query_counter):
    widgets = await session.query(Widget).order_by('id').all()
    assert not widgets[0].is_loaded('gadgets')
    query_counter.reset()
    await session.preload(widgets, 'gadgets')
    assert query_counter.count == 1
    assert widgets[0].is_loaded('gadgets')
    assert len(widgets[0].gadgets) == 2


@pytest.mark.asyncio
async def test_lazy_access_queries_per_call(session, populated_db, query_counter):
    widget = (await session.query(Widget).order_by('id').limit(1).all())[0]
    query_counter.reset()
    await widget.gadgets.all()
    await widget.gadgets.all()
    assert query_counter.count == 2


@pytest.mark.asyncio
async def test_eager_polymorphic_has_many_over_family_is_one_query(session, populated_db, query_counter):
    generic, knots, cookies = populated_db['badges']
    for label, badge in (('g1', generic), ('k1', knots), ('k2', knots), ('c1', cookies)):
        await session.save(
            Control(label=label, displayable_type=schema.polymorphic_name(type(badge)), displayable_id=badge.id)
        )
    query_counter.reset()
    badges = await session.query(Badge).eager_load('controls').order_by('id').all()
    # every subtype of the family shares the one batch
    assert query_counter.count == 2, query_counter.statements
    assert ' OR ' in query_counter.statements[1]
    assert [sorted(c.label for c in b.controls) for b in badges] == [['g1'], ['k1', 'k2'], ['c1']]


@pytest.mark.asyncio
async def test_concurrent_backend_gathers_independent_paths(tmp_path, monkeypatch):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'eager.db'}")
    gathered = []

    async def gather(*aws):
        gathered.append(len(aws))
        return [await aw for aw in aws]

    monkeypatch.setattr(associations, 'asyncio', SimpleNamespace(gather=gather))
    try:
        schema.finalize()
        async with engine.begin() as conn:
            await conn.run_sync(schema.metadata.create_all)
        session = Session(schema, SQLAlchemyBackend(engine, concurrent=True))
        assert session.backend.supports_concurrency
        alpha = await session.save(Widget(name='alpha', size=1))
        beta = await session.save(Widget(name='beta', size=2))
        await session.save(Gadget(name='knob', size=1, widget_id=alpha.id))
        await session.save(Control(label='on', displayable_type='Widget', displayable_id=beta.id))

        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("SELECT"):
                statements.append(statement)

        event.listen(engine.sync_engine, "before_cursor_execute", record)
        widgets = await session.query(Widget).eager_load('gadgets', 'controls').order_by('id').all()

        assert gathered == [2]
        assert len(statements) == 3, statements
        assert [g.name for g in widgets[0].gadgets] == ['knob']
        assert widgets[0].controls == []
        assert widgets[1].gadgets == []
        assert [c.label for c in widgets[1].controls] == ['on']
    finally:
        await engine.dispose()
