import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bistro_pos.config import settings
from bistro_pos.db import Base
from bistro_pos.main import app, get_db


def _make_client() -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def make_token(role: str = "merchant", user_id: str = "user-1") -> str:
    return jwt.encode({"id": user_id, "role": role}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture
def client():
    client = _make_client()
    with client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(role: str = "merchant", user_id: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {make_token(role, user_id)}"}

    return headers


@pytest.fixture
def token():
    return make_token
