"""Tests covering the FastAPI routes defined in :mod:`imagegen.main`."""

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
from imagegen.aiservices.imagegenerationclient import ImageGenerationClient, ImageResult
from imagegen.config import Settings, get_settings
from imagegen.errors import (
    ModelLoadingError,
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRateLimitedError,
)
from imagegen.main import app
from imagegen.prompts import ModelFamily
from imagegen.ratelimiter import SlidingWindowRateLimiter
from imagegen.service import ImageGenerationService, get_image_generation_service
from imagegen.storageservice.storageservice import StorageService, get_database_service

JPEG_BYTES = b"\xff\xd8\xff\xe0stub-image-bytes"
EXPECTED_DATA_URL = "data:image/jpeg;base64,/9j/4HN0dWItaW1hZ2UtYnl0ZXM="


class StubClient(ImageGenerationClient):
    """Test double emulating :class:`InferenceImageGenerationClient`."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.exception: Exception | None = None

    async def generate(self, model_id, composed_prompt, family=ModelFamily.PRIMARY):
        self.calls.append((model_id, composed_prompt, family))
        if self.exception is not None:
            raise self.exception
        return ImageResult(content=JPEG_BYTES, content_type="image/jpeg")

    async def aclose(self) -> None:
        return None


def _settings(**overrides) -> Settings:
    values = {"inference_api_key": "test-key"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def storage_service(tmp_path):
    service = StorageService(str(tmp_path / "history.db"))
    try:
        yield service
    finally:
        service.close()


def _make_client(storage_service: StorageService, settings: Settings):
    stub = StubClient()
    limiter = SlidingWindowRateLimiter(window_seconds=60, max_requests=5)
    service = ImageGenerationService(settings, client=stub, rate_limiter=limiter)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_image_generation_service] = lambda: service
    app.dependency_overrides[get_database_service] = lambda: storage_service
    return stub


@pytest.fixture
def client(storage_service):
    """Yield a :class:`TestClient` backed by stubbed dependencies."""

    stub = _make_client(storage_service, _settings())
    with TestClient(app) as test_client:
        test_client.app.state.stub_client = stub
        test_client.app.state.storage_service = storage_service
        yield test_client

    app.dependency_overrides.clear()
    for attr in ("stub_client", "storage_service"):
        if hasattr(app.state, attr):
            delattr(app.state, attr)


@pytest.fixture
def unconfigured_client(storage_service):
    stub = _make_client(storage_service, _settings(inference_api_key=""))
    with TestClient(app) as test_client:
        test_client.app.state.stub_client = stub
        yield test_client

    app.dependency_overrides.clear()
    if hasattr(app.state, "stub_client"):
        delattr(app.state, "stub_client")


def get_stub(client: TestClient) -> StubClient:
    return client.app.state.stub_client  # type: ignore[return-value]


def get_storage(client: TestClient) -> StorageService:
    return client.app.state.storage_service  # type: ignore[return-value]


def test_healthcheck_reports_backend_settings(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "primaryModel": "SG161222/Realistic_Vision_V5.1_noVAE",
        "alternateModel": "Linaqruf/anything-v3.0",
        "configured": True,
    }


# ---------------------------------------------------------------------------
# /generate
# ---------------------------------------------------------------------------
def test_generate_returns_data_url(client: TestClient) -> None:
    response = client.post("/generate", json={"prompt": "a lighthouse at dusk", "model": "primary"})

    assert response.status_code == 200
    assert response.json() == {"output": EXPECTED_DATA_URL}

    model_id, composed_prompt, family = get_stub(client).calls[0]
    assert model_id == "SG161222/Realistic_Vision_V5.1_noVAE"
    assert composed_prompt.startswith("a lighthouse at dusk, ")
    assert family is ModelFamily.PRIMARY


def test_generate_accepts_legacy_model_names(client: TestClient) -> None:
    response = client.post("/generate", json={"prompt": "a lighthouse", "model": "waifu"})

    assert response.status_code == 200
    assert get_stub(client).calls[0][0] == "Linaqruf/anything-v3.0"


@pytest.mark.parametrize("payload", [{"prompt": ""}, {"model": "primary"}, {"prompt": "   "}, {"prompt": None}])
def test_generate_requires_prompt(client: TestClient, payload) -> None:
    response = client.post("/generate", json=payload)

    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}
    assert get_stub(client).calls == []


def test_generate_rejects_unknown_model(client: TestClient) -> None:
    response = client.post("/generate", json={"prompt": "a lighthouse", "model": "dall-e"})

    assert response.status_code == 400
    assert "Unknown model" in response.json()["error"]


def test_generate_rejects_malformed_body(client: TestClient) -> None:
    response = client.post(
        "/generate",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}
    assert get_stub(client).calls == []


def test_generate_without_api_key_fails_with_500(unconfigured_client: TestClient) -> None:
    response = unconfigured_client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 500
    assert response.json() == {"error": "Inference API key not configured"}
    assert get_stub(unconfigured_client).calls == []


def test_generate_rate_limits_by_forwarded_address(client: TestClient) -> None:
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    for _ in range(5):
        assert client.post("/generate", json={"prompt": "a lighthouse"}, headers=headers).status_code == 200

    response = client.post("/generate", json={"prompt": "a lighthouse"}, headers=headers)

    assert response.status_code == 429
    assert response.json() == {"error": "Rate limit exceeded. Please wait 1 minute before trying again."}
    assert 1 <= int(response.headers["Retry-After"]) <= 60
    assert len(get_stub(client).calls) == 5

    other = client.post("/generate", json={"prompt": "a lighthouse"}, headers={"X-Forwarded-For": "198.51.100.2"})
    assert other.status_code == 200


def test_generate_without_forwarded_header_shares_anonymous_quota(client: TestClient) -> None:
    for _ in range(5):
        assert client.post("/generate", json={"prompt": "a lighthouse"}).status_code == 200

    assert client.post("/generate", json={"prompt": "a lighthouse"}).status_code == 429


def test_generate_maps_model_loading_to_503_with_wait_hint(client: TestClient) -> None:
    get_stub(client).exception = ModelLoadingError("still loading", estimated_time=312.0, status_code=503)

    response = client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 503
    body = response.json()
    assert body["estimated_time"] == 20
    assert "20 seconds" in body["error"]
    assert response.headers["Retry-After"] == "20"


@pytest.fixture
def short_wait_client(storage_service):
    stub = _make_client(storage_service, _settings(model_loading_wait_seconds=5))
    with TestClient(app) as test_client:
        test_client.app.state.stub_client = stub
        yield test_client

    app.dependency_overrides.clear()
    if hasattr(app.state, "stub_client"):
        delattr(app.state, "stub_client")


def test_model_loading_wait_hint_follows_the_service_settings(short_wait_client: TestClient) -> None:
    get_stub(short_wait_client).exception = ModelLoadingError("still loading", status_code=503)

    response = short_wait_client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 503
    assert response.json()["estimated_time"] == 5
    assert "5 seconds" in response.json()["error"]
    assert response.headers["Retry-After"] == "5"


def test_generate_maps_upstream_rate_limit_to_429(client: TestClient) -> None:
    get_stub(client).exception = UpstreamRateLimitedError("quota", status_code=429)

    response = client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 429
    assert response.json() == {"error": "Too many requests. Please wait a minute and try again."}


@pytest.mark.parametrize(
    "exception",
    [
        UpstreamError("boom", status_code=500, body="secret upstream stack trace"),
        UpstreamNetworkError("Could not reach inference API: ConnectError"),
    ],
)
def test_generate_hides_upstream_diagnostics(client: TestClient, exception) -> None:
    get_stub(client).exception = exception

    response = client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to generate image. Please try again."}


def test_generate_maps_unexpected_errors_to_500(client: TestClient) -> None:
    get_stub(client).exception = RuntimeError("unexpected")

    response = client.post("/generate", json={"prompt": "a lighthouse"})

    assert response.status_code == 500
    assert response.json() == {"error": "An unexpected error occurred. Please try again."}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
def test_add_history_record_persists_entry(client: TestClient) -> None:
    payload = {
        "owner_id": "user-1",
        "image_url": EXPECTED_DATA_URL,
        "prompt": "a lighthouse",
        "model": "primary",
    }

    response = client.post("/history", json=payload)

    assert response.status_code == 201
    record_id = response.json()["id"]
    stored = get_storage(client).get_history_record(record_id)
    assert stored["owner_id"] == "user-1"
    assert stored["image_url"] == EXPECTED_DATA_URL


def test_add_history_record_requires_owner(client: TestClient) -> None:
    response = client.post("/history", json={"image_url": "x", "prompt": "p", "model": "primary"})

    assert response.status_code == 422
    assert any(err["loc"][-1] == "owner_id" for err in response.json()["detail"])


def test_list_history_returns_newest_first_for_owner_only(client: TestClient) -> None:
    storage = get_storage(client)
    first = storage.add_history_record("user-1", "data:a", "first", "primary")
    second = storage.add_history_record("user-1", "data:b", "second", "alternate")
    storage.add_history_record("user-2", "data:c", "other", "primary")

    response = client.get("/users/user-1/history")

    assert response.status_code == 200
    records = response.json()["records"]
    assert [record["id"] for record in records] == [second, first]
    assert records[0]["prompt"] == "second"
    assert records[0]["model"] == "alternate"
    assert records[0]["created_at"]


def test_list_history_honours_limit(client: TestClient) -> None:
    storage = get_storage(client)
    for index in range(3):
        storage.add_history_record("user-1", f"data:{index}", f"prompt {index}", "primary")

    response = client.get("/users/user-1/history", params={"limit": 2})

    assert response.status_code == 200
    assert [record["prompt"] for record in response.json()["records"]] == ["prompt 2", "prompt 1"]


def test_list_history_for_unknown_owner_is_empty(client: TestClient) -> None:
    response = client.get("/users/nobody/history")

    assert response.status_code == 200
    assert response.json() == {"records": []}


def test_delete_history_record(client: TestClient) -> None:
    storage = get_storage(client)
    record_id = storage.add_history_record("user-1", "data:a", "first", "primary")

    response = client.delete(f"/history/{record_id}")

    assert response.status_code == 200
    assert response.json() == {"status": "success", "message": f"History record {record_id} deleted"}
    assert storage.get_history_record(record_id) is None


def test_delete_unknown_history_record_returns_404(client: TestClient) -> None:
    response = client.delete("/history/999")

    assert response.status_code == 404
    assert response.json() == {"detail": "History record 999 not found"}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
def test_lifespan_builds_one_shared_service_and_closes_it() -> None:
    request = SimpleNamespace(app=app)

    with TestClient(app) as test_client:
        service = test_client.app.state.image_generation_service
        assert isinstance(service, ImageGenerationService)
        assert get_image_generation_service(request) is service
        assert get_image_generation_service(request) is service

        response = test_client.post("/generate", json={"prompt": "   "})
        assert response.status_code == 400

    assert service._client._client.is_closed
