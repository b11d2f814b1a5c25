"""Database fixtures for berryorm tests (shared)."""

import pytest

from berryorm import Session

from .models import (
    Appointment,
    Author,
    Badge,
    BoyScoutBadge,
    Comment,
    Control,
    Gadget,
    GirlScoutBadge,
    Patient,
    Physician,
    Post,
    Scout,
    Tag,
    User,
    Widget,
    schema,
)


async def create_sample_data(session: Session, connection):
    """Persist one small graph covering every association kind; returns the entities by group."""
    save = session.save
    widgets = [
        await save(Widget(name="alpha", size=3)),
        await save(Widget(name="beta", size=7)),
        await save(Widget(name="gamma", size=5)),
    ]
    w1, w2, _ = widgets
    gadgets = [
        await save(Gadget(name="knob", size=1, widget_id=w1.id)),
        await save(Gadget(name="dial", size=2, widget_id=w1.id)),
        await save(Gadget(name="lever", size=3, widget_id=w2.id)),
    ]
    controls = [
        await save(Control(label="on", displayable_type="Widget", displayable_id=w1.id)),
        await save(Control(label="off", displayable_type="Widget", displayable_id=w2.id)),
        await save(Control(label="reset", displayable_type="Gadget", displayable_id=gadgets[0].id)),
        await save(Control(label="orphan")),
    ]

    scouts = [await save(Scout(name="Sam")), await save(Scout(name="Gale"))]
    badges = [
        await save(Badge(name="Generic", scout_id=scouts[0].id)),
        await save(BoyScoutBadge(name="Knots", scout_id=scouts[0].id, troop="12")),
        await save(GirlScoutBadge(name="Cookies", scout_id=scouts[1].id)),
    ]

    physicians = [await save(Physician(name="House")), await save(Physician(name="Wilson"))]
    patients = [await save(Patient(name=n)) for n in ("Ann", "Ben", "Cy")]
    appointments = [
        await save(Appointment(physician_id=physicians[0].id, patient_id=patients[0].id, confirmed=True)),
        await save(Appointment(physician_id=physicians[0].id, patient_id=patients[1].id, confirmed=False)),
        await save(Appointment(physician_id=physicians[1].id, patient_id=patients[2].id, confirmed=True)),
    ]

    authors = [await save(Author(name="Ada")), await save(Author(name="Brian"))]
    users = [await save(User(name="Uma")), await save(User(name="Vic"))]
    posts = [
        await save(Post(title="Intro", author_id=authors[0].id, meta={"tags": ["hello"]})),
        await save(Post(title="Deep dive", author_id=authors[0].id)),
        await save(Post(title="Other", author_id=authors[1].id)),
    ]
    comments = [
        await save(Comment(body="nice", post_id=posts[0].id, user_id=users[0].id)),
        await save(Comment(body="meh", post_id=posts[1].id, user_id=users[1].id)),
        await save(Comment(body="ok", post_id=posts[2].id, user_id=users[0].id)),
    ]
    tags = [await save(Tag(name="python")), await save(Tag(name="sql"))]
    # join table rows have no entity type of their own
    await connection.execute(
        schema.metadata.tables['posts_tags'].insert(),
        [
            {'post_id': posts[0].id, 'tag_id': tags[0].id},
            {'post_id': posts[0].id, 'tag_id': tags[1].id},
            {'post_id': posts[2].id, 'tag_id': tags[1].id},
        ],
    )
    return {
        'widgets': widgets,
        'gadgets': gadgets,
        'controls': controls,
        'scouts': scouts,
        'badges': badges,
        'physicians': physicians,
        'patients': patients,
        'appointments': appointments,
        'authors': authors,
        'users': users,
        'posts': posts,
        'comments': comments,
        'tags': tags,
    }


@pytest.fixture(scope="function")
async def populated_db(session, connection):
    return await create_sample_data(session, connection)
