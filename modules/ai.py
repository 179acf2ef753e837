"""
AI Collaborator
===============
Natural-language automation generation and voice command parsing, delegated
to an external LLM provider.

Providers: Ollama (local), OpenAI, Claude (Anthropic), Gemini (Google).
All HTTP goes through httpx; tests inject an httpx.MockTransport.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from error_handler import GenerationError

logger = logging.getLogger("modules.ai")

JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")

AUTOMATION_PROMPT = """You are a smart home automation expert. Generate automation rules based on user requests.

Context:
- Available devices: {devices}
- Existing automations: {automations}

Return a JSON object with this structure:
{{
  "name": "automation name",
  "description": "what it does",
  "trigger": {{ "type": "time|state", "config": {{}} }},
  "conditions": [],
  "actions": [{{ "type": "device_control", "deviceId": "id", "command": "turn_on|turn_off|toggle|set_brightness", "parameters": {{}} }}]
}}

Time triggers use config {{"time": "HH:MM", "days": "*"}} or {{"cron": "M H * * D"}}.
State triggers use config {{"deviceId": "id", "property": "state", "operator": "equals|changes_to|changes_from|greater_than|less_than|changes", "value": ...}}.
Only reference device ids from the list above. Return JSON only."""

VOICE_PROMPT = """You are a smart home voice assistant. Parse voice commands and return structured actions.

Available devices: {devices}

Return JSON with this structure:
{{
  "intent": "control|query|automation|other",
  "entities": {{ "device": "name", "action": "turn_on|turn_off|toggle|set_brightness", "value": null }},
  "response": "natural language response to user"
}}"""

UNKNOWN_INTENT = {
    "intent": "unknown",
    "entities": {},
    "response": "I'm sorry, I didn't understand that command.",
}


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pull the outermost JSON object out of an LLM reply.

    Raises:
        ValueError: no JSON object, or it does not parse
    """
    match = JSON_BLOCK_RE.search(text or "")
    if not match:
        raise ValueError("No valid JSON found in AI response")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("AI response JSON is not an object")
    return data


# ============================================================================
# PROVIDERS
# ============================================================================

class AIProvider:
    """Base provider. ``chat`` returns {content, model, usage}."""
    name = "base"
    requires_key = True

    def __init__(self, config: Dict[str, Any], timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self.base_url = (self.config.get("base_url") or "").rstrip("/")
        self.model = self.config.get("model")
        self.api_key = self.config.get("api_key")
        self.timeout = timeout
        self._transport = transport

    def is_enabled(self) -> bool:
        if not self.config.get("enabled", True):
            return False
        return bool(self.api_key) or not self.requires_key

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
                   max_tokens: int = 1000) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def _split_system(messages: List[Dict[str, str]]):
        system = next((m["content"] for m in messages if m["role"] == "system"), "")
        rest = [m for m in messages if m["role"] != "system"]
        return system, rest


class OllamaProvider(AIProvider):
    name = "ollama"
    requires_key = False

    async def chat(self, messages, temperature=0.7, max_tokens=1000):
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/api/chat", json={
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": temperature, "top_p": 0.9},
            })
            response.raise_for_status()
        data = response.json()
        return {"content": data["message"]["content"], "model": self.model, "usage": None}


class OpenAIProvider(AIProvider):
    name = "openai"

    async def chat(self, messages, temperature=0.7, max_tokens=1000):
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        data = response.json()
        return {
            "content": data["choices"][0]["message"]["content"],
            "model": data.get("model", self.model),
            "usage": data.get("usage"),
        }


class ClaudeProvider(AIProvider):
    name = "claude"

    async def chat(self, messages, temperature=0.7, max_tokens=1024):
        system, rest = self._split_system(messages)
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/messages",
                json={
                    "model": self.model,
                    "max_tokens": max_tokens,
                    "system": system,
                    "messages": rest,
                    "temperature": temperature,
                },
                headers={"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            )
            response.raise_for_status()
        data = response.json()
        return {
            "content": data["content"][0]["text"],
            "model": data.get("model", self.model),
            "usage": data.get("usage"),
        }


class GeminiProvider(AIProvider):
    name = "gemini"

    async def chat(self, messages, temperature=0.7, max_tokens=1000):
        system, rest = self._split_system(messages)
        body = {
            "contents": [
                {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
                for m in rest
            ],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json=body,
            )
            response.raise_for_status()
        data = response.json()
        return {
            "content": data["candidates"][0]["content"]["parts"][0]["text"],
            "model": self.model,
            "usage": data.get("usageMetadata"),
        }


PROVIDER_CLASSES = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
}


# ============================================================================
# SERVICE
# ============================================================================

class AIService:
    """
    Provider-agnostic facade used by the automation engine and the voice API.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        config = config or {}
        self.default_provider = config.get("default_provider", "ollama")
        timeout = float(config.get("timeout", 30))
        self.providers: Dict[str, AIProvider] = {}
        for name, provider_config in (config.get("providers") or {}).items():
            cls = PROVIDER_CLASSES.get(name)
            if cls is None:
                logger.warning(f"Unknown AI provider '{name}' in configuration, skipped")
                continue
            self.providers[name] = cls(provider_config, timeout=timeout, transport=transport)

    def enabled_providers(self) -> List[str]:
        return [name for name, p in self.providers.items() if p.is_enabled()]

    async def chat(self, messages: List[Dict[str, str]], provider: Optional[str] = None,
                   temperature: float = 0.7) -> Dict[str, Any]:
        """
        Send a conversation to a provider.

        Raises:
            GenerationError: unknown/disabled provider or transport failure
        """
        name = provider or self.default_provider
        ai_provider = self.providers.get(name)
        if ai_provider is None:
            raise GenerationError(f"Unknown AI provider: {name}")
        if not ai_provider.is_enabled():
            raise GenerationError(f"AI provider {name} is not enabled. Check your configuration.")

        try:
            result = await ai_provider.chat(messages, temperature=temperature)
        except httpx.TimeoutException:
            logger.error(f"Timeout calling {name} (>{ai_provider.timeout}s)")
            raise GenerationError(f"AI provider {name} timed out")
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling {name}: {type(e).__name__}: {e}")
            raise GenerationError(f"AI provider {name} failed: {e}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Malformed response from {name}: {e}")
            raise GenerationError(f"AI provider {name} returned a malformed response")

        return {
            "provider": name,
            "response": result["content"],
            "model": result.get("model"),
            "usage": result.get("usage"),
        }

    async def generate_automation(self, prompt: str, context: Optional[Dict[str, Any]] = None,
                                  provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Turn a natural-language request into an automation definition dict.

        Raises:
            GenerationError: provider failure or no usable JSON in the reply
        """
        context = context or {}
        system = AUTOMATION_PROMPT.format(
            devices=json.dumps(context.get("devices", [])),
            automations=json.dumps(context.get("automations", [])),
        )
        result = await self.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            provider=provider,
            temperature=0.7,
        )
        try:
            spec = extract_json(result["response"])
        except ValueError as e:
            logger.error(f"Failed to parse automation: {e}")
            raise GenerationError("AI failed to generate valid automation", {"raw": result["response"][:500]})

        spec.setdefault("_provider", result["provider"])
        spec.setdefault("_model", result.get("model"))
        logger.info(f"🤖 Generated automation '{spec.get('name')}' via {result['provider']}")
        return spec

    async def process_voice_command(self, command: str, context: Optional[Dict[str, Any]] = None,
                                    provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Classify a voice command. Unparseable replies yield the 'unknown' intent.
        """
        context = context or {}
        system = VOICE_PROMPT.format(devices=json.dumps(context.get("devices", [])))
        result = await self.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": command}],
            provider=provider,
            temperature=0.5,
        )
        try:
            parsed = extract_json(result["response"])
        except ValueError as e:
            logger.warning(f"Failed to parse voice command: {e}")
            return dict(UNKNOWN_INTENT)

        parsed.setdefault("intent", "other")
        parsed.setdefault("entities", {})
        parsed.setdefault("response", "")
        return parsed
