from fastapi.testclient import TestClient

from reward_board.core.config import Settings
from reward_board.main import app, create_app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_app_without_tracing() -> None:
    application = create_app(Settings(app_name="reward-board-test", otel_enabled=False))

    assert application.title == "reward-board-test"
    assert application.state.telemetry.enabled is False
    assert TestClient(application).get("/healthz").status_code == 200
