"""
Shared pytest fixtures for the Agency Operations Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - world: a client with a contracted product, an admin, an assignee
      collaborator, a second collaborator and the client's portal user
    - ctx helpers and bearer-token headers for each role
"""

from datetime import date

import jwt as pyjwt
import pytest

from agencyops import create_app
from agencyops.models import db as _db
from agencyops.models.auth import Role, User, UserRole
from agencyops.models.client import Client, ClientService, Product
from agencyops.models.work import Task, TaskAttachment
from agencyops.services import realtime
from agencyops.services.notifier import get_notifier
from agencyops.services.roles import ActingContext, RoleClass

# A Wednesday; SLA tests count business days from here
TODAY = date(2026, 3, 4)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        realtime._event_bus = None
        get_notifier().outbox.clear()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def outbox():
    """Emails the log-only notifier recorded during the test."""
    return get_notifier().outbox


# ── ORM factories ────────────────────────────────────────────────────────


def make_user(email, role_label, *, client=None, status="active", full_name=None) -> User:
    role = Role.query.filter_by(name=role_label).first()
    if role is None:
        role = Role(name=role_label, display_name=role_label)
        _db.session.add(role)
        _db.session.flush()
    user = User(
        email=email,
        full_name=full_name or email.split("@")[0],
        status=status,
        client_id=client.id if client is not None else None,
    )
    _db.session.add(user)
    _db.session.flush()
    _db.session.add(UserRole(user_id=user.id, role_id=role.id))
    if client is not None:
        client.user_id = user.id
    _db.session.commit()
    return user


def make_client(name="Acme Bakery", email="owner@acme.test", *, price=250, sla_days=3):
    client = Client(name=name, email=email, status="active")
    product = Product(name=f"{name} Reels", base_price=300, default_sla_days=5)
    _db.session.add_all([client, product])
    _db.session.flush()
    service = ClientService(
        client_id=client.id, product_id=product.id,
        negotiated_price=price, sla_days=sla_days,
    )
    _db.session.add(service)
    _db.session.commit()
    return client, product, service


def make_task(world, status="backlog", *, assignee=None, due=TODAY, outputs=0, request_id=None) -> Task:
    """Insert a task at an arbitrary status, bypassing the lifecycle guards."""
    task = Task(
        client_id=world.client.id,
        product_id=world.product.id,
        assignee_id=(assignee or world.editor).id,
        request_id=request_id,
        due_date=due,
        frozen_price=world.service.negotiated_price,
        frozen_sla_days=world.service.sla_days,
        status=status,
    )
    _db.session.add(task)
    _db.session.flush()
    for n in range(outputs):
        _db.session.add(TaskAttachment(
            task_id=task.id, direction="output", file_name=f"cut-{n}.mp4",
            content_type="video/mp4", size_bytes=10, url=f"memory://seed-{task.id}-{n}",
        ))
    _db.session.commit()
    return task


class World:
    """Named handles for the standard cast of a test."""

    def __init__(self):
        self.client, self.product, self.service = make_client()
        self.admin = make_user("admin@agency.test", "Admin")
        self.editor = make_user("editor@agency.test", "Editor de Vídeo")
        self.designer = make_user("designer@agency.test", "web-designer")
        self.client_user = make_user("owner@acme.test", "Cliente", client=self.client)

        self.other_client, self.other_product, self.other_service = make_client(
            name="Other Gym", email="hello@gym.test"
        )
        self.other_client_user = make_user("hello@gym.test", "client", client=self.other_client)

    # ActingContexts ------------------------------------------------------

    @property
    def admin_ctx(self):
        return ActingContext(self.admin.id, RoleClass.ADMIN)

    def admin_as(self, client):
        return ActingContext(self.admin.id, RoleClass.ADMIN, viewing_client_id=client.id)

    @property
    def editor_ctx(self):
        return ActingContext(self.editor.id, RoleClass.COLLABORATOR)

    @property
    def designer_ctx(self):
        return ActingContext(self.designer.id, RoleClass.COLLABORATOR)

    @property
    def client_ctx(self):
        return ActingContext(self.client_user.id, RoleClass.CLIENT, viewing_client_id=self.client.id)

    @property
    def other_client_ctx(self):
        return ActingContext(
            self.other_client_user.id, RoleClass.CLIENT, viewing_client_id=self.other_client.id
        )


@pytest.fixture()
def world():
    return World()


# ── Bearer tokens ────────────────────────────────────────────────────────


def bearer(app, user, roles=None, **claims):
    """Authorization header for ``user`` as the identity provider would mint it."""
    payload = {"sub": str(user.id), **claims}
    if roles is not None:
        payload["roles"] = roles
    token = pyjwt.encode(payload, app.config["IDP_JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers(app, world):
    """Bearer headers keyed by cast member; roles come from the DB."""
    return {
        "admin": bearer(app, world.admin),
        "editor": bearer(app, world.editor),
        "designer": bearer(app, world.designer),
        "client": bearer(app, world.client_user),
        "other_client": bearer(app, world.other_client_user),
    }
