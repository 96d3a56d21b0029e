"""Endpoint tests through FastAPI's TestClient with a fake model client."""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeGemini, make_settings
from chat_widget.app import build_services, create_app
from chat_widget.schemas import CUSTOMER_INTENTION_SCHEMA

MESSAGES = [{"role": "user", "content": "A beach trip to Lisbon please"}]


def _search_output(**values):
    output = {key: None for key in ("location", "startDate", "endDate", "guests", "activities")}
    output["retracted"] = []
    output.update(values)
    return output


@pytest.fixture
def gemini():
    return FakeGemini()


def _client(gemini, **overrides):
    services = build_services(make_settings(**overrides), gemini=gemini)
    return TestClient(create_app(services=services))


@pytest.fixture
def client(gemini):
    return _client(gemini)


class TestHealthAndValidation:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "model": "fake-gemini"}

    def test_missing_messages_is_400(self, client):
        response = client.post("/api/search-data", json={"currentData": {}})
        assert response.status_code == 400
        assert "messages" in response.json()["error"]

    def test_blank_moderation_content_is_400(self, client):
        response = client.post("/api/moderate-user-message", json={"content": "   "})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_invalid_content_bounds_are_400(self, client):
        body = {
            "itemInformation": {"title": "Villa"},
            "customerIntention": {"likes": ["sea"]},
            "name": "blurb",
            "instructions": "Pitch it",
            "minCharacters": 50,
            "maxCharacters": 10,
        }
        response = client.post("/api/generate-custom-content", json=body)
        assert response.status_code == 400

    def test_invalid_search_config_is_400(self, client):
        body = {"messages": MESSAGES, "searchConfig": {"searchData": {"tier": {"type": "enum", "description": "x"}}}}
        response = client.post("/api/search-data", json=body)
        assert response.status_code == 400


class TestChat:
    def test_streams_reply_text(self, client, gemini):
        gemini.queue_stream(["Lisbon ", "is lovely", " in June."])
        response = client.post("/api/chat", json={"messages": MESSAGES})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Lisbon is lovely in June."
        call = gemini.calls_of("stream")[0]
        assert call.model == "fake-chat"
        assert "online travel agency" in call.system_instruction

    def test_html_is_stripped_before_the_model_call(self, client, gemini):
        gemini.queue_stream(["ok"])
        client.post("/api/chat", json={"messages": [{"role": "user", "content": "<i>Beach</i><script>x()</script>"}]})
        assert gemini.calls_of("stream")[0].contents == [{"role": "user", "parts": [{"text": "Beach"}]}]

    def test_history_without_user_message_is_400(self, client):
        response = client.post("/api/chat", json={"messages": [{"role": "assistant", "content": "Hi"}]})
        assert response.status_code == 400

    def test_stream_that_fails_before_first_chunk_is_500(self, client, gemini):
        gemini.queue_stream([], error=RuntimeError("model unavailable"))
        response = client.post("/api/chat", json={"messages": MESSAGES})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate content"}


class TestExtractionEndpoints:
    def test_search_data_merges_with_current_data(self, client, gemini):
        gemini.queue_json(_search_output(activities=["surfing"], startDate="2024-06-01"))
        response = client.post(
            "/api/search-data",
            json={"messages": MESSAGES, "currentData": {"location": "Lisbon", "activities": ["beach"]}},
        )
        assert response.status_code == 200
        assert response.json() == {
            "location": "Lisbon",
            "startDate": "2024-06-01",
            "activities": ["beach", "surfing"],
        }

    def test_search_data_failure_returns_current_data(self, client, gemini):
        gemini.queue_json("garbage")
        response = client.post("/api/search-data", json={"messages": MESSAGES, "currentData": {"location": "Lisbon"}})
        assert response.status_code == 200
        assert response.json() == {"location": "Lisbon"}

    def test_search_data_uses_request_search_config(self, client, gemini):
        gemini.queue_json({"city": "Porto"})
        body = {
            "messages": MESSAGES,
            "searchConfig": {"searchData": {"city": {"type": "string", "description": "City", "required": True}}},
        }
        response = client.post("/api/search-data", json=body)
        assert response.json() == {"city": "Porto"}

    def test_customer_intention(self, client, gemini):
        output = {key: None for key in CUSTOMER_INTENTION_SCHEMA.fields}
        output.update(likes=["beaches"], retracted=[])
        gemini.queue_json(output)
        response = client.post("/api/customer-intention", json={"messages": MESSAGES, "currentData": {"budget": 900}})
        assert response.json() == {"likes": ["beaches"], "budget": 900}

    def test_customer_prospect(self, client, gemini):
        gemini.queue_json(
            {"type": "holiday", "priceRange": {"min": 500, "max": 1500}, "specifications": None, "preferences": ["beach"]}
        )
        response = client.post("/api/customer-prospect", json={"messages": MESSAGES})
        assert response.json() == {
            "type": "holiday",
            "priceRange": {"min": 500, "max": 1500},
            "preferences": ["beach"],
        }


class TestModerationAndContent:
    def test_moderation_verdict(self, client, gemini):
        gemini.queue_json({"flagged": False, "categories": {}})
        response = client.post("/api/moderate-user-message", json={"content": "Hello there"})
        assert response.json() == {"flagged": False, "categories": None}

    def test_moderation_failure_is_500(self, client, gemini):
        gemini.queue_json(RuntimeError("moderation backend down"))
        response = client.post("/api/moderate-user-message", json={"content": "Hello there"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to moderate message"}

    def test_strong_match_failure_result(self, client, gemini):
        gemini.queue_json({"score": 0.2, "explanation": "Not a fit"})
        body = {
            "itemInformation": {"title": "Ski chalet"},
            "customerIntention": {"likes": ["beaches"]},
            "name": "chalet_blurb",
            "instructions": "Pitch it",
            "minCharacters": 10,
            "maxCharacters": 60,
            "strongMatchOnly": True,
        }
        response = client.post("/api/generate-custom-content", json=body)
        assert response.status_code == 200
        assert response.json() == {
            "scenario": "strongMatchFailure",
            "metadata": {"name": "chalet_blurb", "matchScore": 0.2, "matchScoreThreshold": 0.65},
        }

    def test_generation_failure_is_500(self, client, gemini):
        gemini.queue_json({"content": "x" * 100, "explanation": "", "metadata": {"customerIntentionUsed": []}})
        body = {
            "itemInformation": {"title": "Villa"},
            "customerIntention": {"likes": ["sea"]},
            "name": "blurb",
            "instructions": "Pitch it",
            "minCharacters": 10,
            "maxCharacters": 60,
        }
        response = client.post("/api/generate-custom-content", json=body)
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate content"}


class TestRateLimit:
    def test_requests_over_budget_get_429(self, gemini):
        client = _client(gemini, rate_limit=2)
        gemini.queue_json({"flagged": False}, {"flagged": False})
        for _ in range(2):
            assert client.post("/api/moderate-user-message", json={"content": "hi"}).status_code == 200
        response = client.post(
            "/api/moderate-user-message", json={"content": "hi"}, headers={"Origin": "http://localhost:3000"}
        )
        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests, please try again later."}
        assert "retry-after" in response.headers
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert client.get("/api/health").status_code == 200

    def test_each_app_gets_its_own_budget(self, gemini):
        gemini.queue_json({"flagged": False}, {"flagged": False})
        first = _client(gemini, rate_limit=1)
        second = _client(gemini, rate_limit=1)
        assert first.post("/api/moderate-user-message", json={"content": "hi"}).status_code == 200
        assert second.post("/api/moderate-user-message", json={"content": "hi"}).status_code == 200


class TestCors:
    def test_cors_allows_configured_origin(self, client):
        response = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert "access-control-allow-credentials" not in response.headers

    def test_preflight_allows_only_widget_methods_and_headers(self, client):
        allowed = client.options(
            "/api/chat",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )
        assert allowed.status_code == 200
        assert set(allowed.headers["access-control-allow-methods"].split(", ")) == {"GET", "POST", "OPTIONS"}

        rejected = client.options(
            "/api/chat",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "DELETE",
                "Access-Control-Request-Headers": "x-api-key",
            },
        )
        assert rejected.status_code == 400

    def test_unexpected_error_is_500_with_cors_headers(self, gemini):
        services = build_services(make_settings(), gemini=gemini)

        async def broken_moderate(text):
            raise KeyError("categories")

        services.moderator.moderate = broken_moderate
        client = TestClient(create_app(services=services), raise_server_exceptions=False)
        response = client.post(
            "/api/moderate-user-message", json={"content": "Hello"}, headers={"Origin": "http://localhost:3000"}
        )
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
