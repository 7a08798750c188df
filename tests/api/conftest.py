"""HTTP client fixtures sharing the test database and clock."""

import pytest
from fastapi.testclient import TestClient

from expense_api.app import create_app
from expense_config import WorkflowSettings


@pytest.fixture
def app(session_factory, deterministic_clock, notification_sink):
    return create_app(
        settings=WorkflowSettings(),
        session_factory=session_factory,
        clock=deterministic_clock,
        notifier_factory=lambda session, clock: notification_sink,
    )


@pytest.fixture
def client(app, session, users):
    """Client over a committed company and user set.

    Tests that seed more rows through ``session`` commit before calling
    the API.
    """
    session.commit()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def as_user(users):
    def _headers(key: str) -> dict[str, str]:
        return {"X-User-Id": str(users[key].user_id)}

    return _headers
