import os
from types import SimpleNamespace

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SITE_URL"] = "https://flexicad.test"
os.environ["KNOWLEDGE_DIR"] = os.path.join(os.path.dirname(__file__), "no-such-knowledge-dir")
os.environ["DEV_BEARER_TOKEN"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import server  # noqa: E402
from classes.entities import Base, Profile  # noqa: E402

USERS = {
    "user-token": ("user-1", "User@Example.com"),
    "other-token": ("user-2", "other@example.com"),
    "admin-token": ("admin-1", "admin@example.com"),
}


class FakeAuth:
    def get_user(self, token):
        if token not in USERS:
            raise ValueError("invalid JWT")
        user_id, email = USERS[token]
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=email))


class FakeSupabase:
    def __init__(self):
        self.auth = FakeAuth()


class FakeStorage:
    def __init__(self):
        self.lines = []

    def append_line(self, path, line):
        self.lines.append((path, line))
        return path


class FakeLlm:
    model_name = "gpt-4o-mini"

    def __init__(self, reply="```openscad\ncube([10, 10, 10]);\n```", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply

    def get_total_tokens(self):
        return 321

    def get_accrued_cost(self):
        return 0.0012


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def fake_llm():
    return FakeLlm()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def client(session_factory, fake_llm, fake_storage):
    server.app.dependency_overrides[server.get_session_factory] = lambda: session_factory
    server.app.dependency_overrides[server.get_supabase] = lambda: FakeSupabase()
    server.app.dependency_overrides[server.get_llm_factory] = lambda: (lambda: fake_llm)
    server.app.dependency_overrides[server.get_storage] = lambda: fake_storage
    with TestClient(server.app) as c:
        yield c
    server.app.dependency_overrides.clear()


@pytest.fixture
def add_profile(session_factory):
    def _add(user_id="user-1", email="user@example.com", **fields):
        session = session_factory()
        try:
            profile = Profile(id=user_id, email=email, **fields)
            session.add(profile)
            session.commit()
            return profile
        finally:
            session.close()
    return _add


@pytest.fixture
def paid_profile(add_profile):
    return add_profile(is_paid=True, is_active=True, subscription_plan="monthly")


def bearer(token="user-token"):
    return {"Authorization": f"Bearer {token}"}
