from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from models import User, Subscription, Usage, Exam, Question, Result, Integration
from web_app import create_app, AUTH_COOKIE, AUTH_VALUE

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def make_user(**overrides):
    fields = dict(
        id="ana@example.com",
        email=None,
        username=None,
        subscription=Subscription(plan="trial", status="active"),
        usage=Usage(),
        integration_id=None,
        integrat_partner_token=None,
        created_at=NOW,
        updated_at=NOW,
        object_id="665d1f0c2a1b3c4d5e6f7a8b",
    )
    fields.update(overrides)
    return User(**fields)


def make_exam(questions=2, **overrides):
    fields = dict(
        id="665d1f0c2a1b3c4d5e6f7a01",
        title="Biologia",
        user_id="ana@example.com",
        class_id="class-1",
        description=None,
        question_count=questions,
        duration=30,
        difficulty="medium",
        is_public=False,
        share_id=None,
        questions=[
            Question(question=f"Q{index}", context=None, options=["a", "b"], correct_answer="a")
            for index in range(1, questions + 1)
        ],
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Exam(**fields)


def make_result(**overrides):
    fields = dict(
        id="665d1f0c2a1b3c4d5e6f7b01",
        exam_id="665d1f0c2a1b3c4d5e6f7a01",
        class_id="class-1",
        email="aluno@example.com",
        score=8,
        percentage=0.8,
        exam_title="Biologia",
        exam_question_count=10,
        created_at=NOW,
    )
    fields.update(overrides)
    return Result(**fields)


def make_integration(**overrides):
    fields = dict(
        id="665d1f0c2a1b3c4d5e6f7c01",
        integration_id="6f1c7d1e-1111-4b5a-9c2d-000000000001",
        integration_name="Escola Alfa",
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return Integration(**fields)


@pytest.fixture
def repo():
    return MagicMock()


@pytest.fixture
def monitor():
    mock = MagicMock()
    mock.configured = True
    return mock


@pytest.fixture
def costs():
    mock = MagicMock()
    mock.configured = True
    return mock


@pytest.fixture
def app(repo, monitor, costs):
    app = create_app(repo, monitor=monitor, costs=costs, password="secret")
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(app):
    client = app.test_client()
    client.set_cookie(AUTH_COOKIE, AUTH_VALUE)
    return client
