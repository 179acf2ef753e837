"""Tests for the AI collaborator."""

from __future__ import annotations

import json

import httpx
import pytest

from error_handler import GenerationError
from modules.ai import AIService, UNKNOWN_INTENT, extract_json

AUTOMATION_JSON = {
    "name": "Night lock",
    "description": "Lock the door at night",
    "trigger": {"type": "time", "config": {"time": "23:00"}},
    "conditions": [],
    "actions": [{"type": "device_control", "deviceId": "lock1", "command": "lock"}],
}


def make_service(handler, **overrides) -> AIService:
    config = {
        "default_provider": "ollama",
        "timeout": 5,
        "providers": {
            "ollama": {"base_url": "http://ollama.test", "model": "llama3"},
            "openai": {"base_url": "http://openai.test/v1", "model": "gpt-4o-mini", "api_key": None},
            "claude": {"base_url": "http://claude.test/v1", "model": "claude-test", "api_key": "k-claude"},
        },
    }
    config.update(overrides)
    return AIService(config, transport=httpx.MockTransport(handler))


def ollama_reply(content: str):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        return httpx.Response(200, json={"message": {"role": "assistant", "content": content}})
    return handler


class TestExtractJson:
    """Tests for pulling JSON out of model replies."""

    def test_surrounding_prose(self) -> None:
        assert extract_json('Sure! {"a": {"b": 1}} Enjoy.') == {"a": {"b": 1}}

    @pytest.mark.parametrize("text", ["no json here", "{broken", "", "[1, 2]"])
    def test_rejects(self, text) -> None:
        with pytest.raises(ValueError):
            extract_json(text)


class TestGenerateAutomation:
    """Tests for AIService.generate_automation."""

    async def test_returns_spec_with_provenance(self) -> None:
        service = make_service(ollama_reply("Here you go:\n" + json.dumps(AUTOMATION_JSON)))
        spec = await service.generate_automation("lock up at 11", {"devices": [{"id": "lock1"}]})

        assert spec["name"] == "Night lock"
        assert spec["_provider"] == "ollama"
        assert spec["_model"] == "llama3"

    async def test_prompt_carries_context(self) -> None:
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"message": {"content": json.dumps(AUTOMATION_JSON)}})

        service = make_service(handler)
        await service.generate_automation("lock up", {"devices": [{"id": "lock1", "name": "Front door"}]})

        system, user = bodies[0]["messages"]
        assert "Front door" in system["content"]
        assert user == {"role": "user", "content": "lock up"}

    async def test_unparseable_reply(self) -> None:
        service = make_service(ollama_reply("I cannot help with that."))
        with pytest.raises(GenerationError):
            await service.generate_automation("??")

    async def test_http_failure(self) -> None:
        service = make_service(lambda request: httpx.Response(500, json={"error": "down"}))
        with pytest.raises(GenerationError):
            await service.generate_automation("lock up")

    async def test_malformed_provider_response(self) -> None:
        service = make_service(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(GenerationError):
            await service.generate_automation("lock up")

    async def test_provider_without_key_is_disabled(self) -> None:
        service = make_service(ollama_reply("{}"))
        assert "openai" not in service.enabled_providers()
        with pytest.raises(GenerationError):
            await service.generate_automation("lock up", provider="openai")
        with pytest.raises(GenerationError):
            await service.generate_automation("lock up", provider="skynet")

    async def test_claude_request_shape(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "claude-test",
                "content": [{"type": "text", "text": json.dumps(AUTOMATION_JSON)}],
            })

        service = make_service(handler)
        spec = await service.generate_automation("lock up", provider="claude")

        assert spec["_provider"] == "claude"
        assert seen["headers"]["x-api-key"] == "k-claude"
        assert "smart home" in seen["body"]["system"]
        assert [m["role"] for m in seen["body"]["messages"]] == ["user"]


class TestVoiceCommand:
    """Tests for AIService.process_voice_command."""

    async def test_parsed_intent(self) -> None:
        reply = {"intent": "control", "entities": {"device": "Hall Light", "action": "turn_on"}, "response": "OK"}
        service = make_service(ollama_reply(json.dumps(reply)))
        result = await service.process_voice_command("turn on the hall light")
        assert result == reply

    async def test_unparseable_falls_back(self) -> None:
        service = make_service(ollama_reply("hmm?"))
        assert await service.process_voice_command("blorp") == UNKNOWN_INTENT
