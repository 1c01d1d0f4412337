"""Shared fixtures: an isolated in-memory application per test plus workflow entity factories."""
import itertools

import pytest

from app import create_app
from extensions import db
from models import Contractor, Report, ReportStatus, User, Ward
from utils.identity import Actor, issue_api_token

STRONG_PASSWORD = "Civic-Report-2024"
JUSTIFICATION = "Verified on site by the ward engineer."


def actor_for(user: User) -> Actor:
    return Actor(user.id, user.role, user.full_name)


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app_factory(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("IDENTITY_PROVIDER", raising=False)
    monkeypatch.delenv("STATIC_CREDENTIALS", raising=False)
    monkeypatch.delenv("STRICT_STATUS_TRANSITIONS", raising=False)
    created = []

    def build(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        application = create_app("testing")
        created.append(application)
        return application

    yield build
    for application in created:
        with application.app_context():
            db.session.remove()
            db.drop_all()


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def ctx(app):
    """Application context for service-level tests.

    API tests must not hold this context while issuing requests: Flask-Login
    caches the loaded principal on ``g`` for the lifetime of the app context.
    """
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def build(role: str = "CITIZEN", full_name=None) -> User:
        n = next(counter)
        user = User(
            full_name=full_name or f"{role.title()} {n}",
            email=f"{role.lower()}{n}@example.org",
            role=role,
            is_active=True,
        )
        user.set_password(STRONG_PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user

    return build


@pytest.fixture
def token_for(app):
    def build(user: User) -> str:
        token = issue_api_token(user)
        db.session.commit()
        return token

    return build


@pytest.fixture
def make_ward(app):
    counter = itertools.count(1)

    def build(name=None, state: str = "Karnataka", district: str = "Bengaluru Urban") -> Ward:
        ward = Ward(name=name or f"Ward {next(counter)}", state=state, district=district)
        db.session.add(ward)
        db.session.commit()
        return ward

    return build


@pytest.fixture
def make_report(app):
    def build(reporter: User, ward: Ward, status: ReportStatus = ReportStatus.OPEN, **fields) -> Report:
        fields.setdefault("title", "Pothole near the bus depot")
        fields.setdefault("latitude", 12.9716)
        fields.setdefault("longitude", 77.5946)
        fields.setdefault("severity", 3)
        report = Report(reporter_id=reporter.id, ward_id=ward.id, status=status, **fields)
        db.session.add(report)
        db.session.commit()
        return report

    return build


@pytest.fixture
def make_contractor(make_user):
    def build(business_name: str = "Roadworks Ltd", is_verified: bool = False, user: User = None) -> Contractor:
        user = user or make_user("CONTRACTOR", full_name=f"{business_name} Owner")
        contractor = Contractor(user_id=user.id, business_name=business_name, email=user.email, is_verified=is_verified)
        db.session.add(contractor)
        db.session.commit()
        return contractor

    return build


@pytest.fixture
def citizen(ctx, make_user):
    return make_user("CITIZEN", full_name="Asha Citizen")


@pytest.fixture
def admin(ctx, make_user):
    return make_user("ADMIN", full_name="Ravi Admin")


@pytest.fixture
def ward(ctx, make_ward):
    return make_ward("Ward 12")
