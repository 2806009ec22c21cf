import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rentpay.db")
os.environ.setdefault("BOLD_API_KEY", "test-bold-key")
os.environ.setdefault("CRON_JOB_SECRET", "cron-secret")
os.environ.setdefault("JWT_SECRET", "jwt-secret")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rentpay.main import app as fastapi_app
from rentpay.database import Base, get_db
from rentpay.helpers import now_utc
from rentpay.models import Account, AccountState, AttemptStatus, PaymentAttempt

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

CRON_HEADERS = {"Authorization": "Bearer cron-secret"}


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    monkeypatch.setenv("BOLD_API_KEY", "test-bold-key")
    monkeypatch.setenv("CRON_JOB_SECRET", "cron-secret")
    monkeypatch.setenv("JWT_SECRET", "jwt-secret")
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def auth_headers(customer_id="customer-1", secret="jwt-secret"):
    token = jwt.encode({"sub": customer_id, "aud": "authenticated"}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def add_account(db, state=AccountState.RESERVED, **kwargs):
    account = Account(state=state, email=kwargs.pop("email", "acc@example.com"),
                      platform=kwargs.pop("platform", "Netflix"), **kwargs)
    db.add(account)
    db.commit()
    return account


def add_attempt(db, account, age_seconds, expires_in_seconds=300,
                status=AttemptStatus.PENDING, link_id=None, now=None):
    """Attempt created ``age_seconds`` ago whose link lives ``expires_in_seconds``."""
    now = now or now_utc()
    created_at = now - timedelta(seconds=age_seconds)
    attempt = PaymentAttempt(
        external_link_id=link_id or f"LNK_{account.id}_{age_seconds}",
        account_id=account.id if account is not None else None,
        status=status,
        created_at=created_at,
        configured_expires_at=(
            created_at + timedelta(seconds=expires_in_seconds)
            if expires_in_seconds is not None else None
        ),
    )
    db.add(attempt)
    db.commit()
    return attempt
