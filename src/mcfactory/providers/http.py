"""
HTTP provider adapters built on httpx.

Each variant only knows how to shape a request for its API and how to read
the answer; status handling and error classification are shared, so every
remote failure reaches the resilience layer as a classified ProviderError.
"""

import json
from abc import abstractmethod
from typing import Any

import httpx

from ..config.settings import ProviderSettings
from ..core.errors import ErrorKind, ProviderError
from ..observability.logging import get_logger
from ..observability.metrics import timer
from .base import ProviderAdapter, classify_exception

logger = get_logger(__name__)

# Instructions sent as the system prompt for chat-style providers
TASK_INSTRUCTIONS: dict[str, str] = {
    "translate": (
        "Translate the input text into the language given by target_lang. "
        'Reply with JSON: {"translated": str, "sourceLang": str, "targetLang": str}.'
    ),
    "moderate": (
        "Moderate the input text. Reply with JSON: "
        '{"safe": bool, "flagged": bool, "categories": [str], "confidence": float}.'
    ),
    "detectAI": (
        "Estimate whether the input text was written by an AI model. "
        'Reply with JSON: {"isAI": bool, "confidence": float}.'
    ),
    "summarize": (
        "Summarize the input text with the requested length (short, medium or long). "
        'Reply with JSON: {"summary": str, "length": str}.'
    ),
    "sentiment": (
        "Classify the sentiment of the input text. "
        'Reply with JSON: {"label": "positive" | "neutral" | "negative", "score": float}.'
    ),
    "categorize": (
        "Assign topical tags to the input text, preferring any hint tags given. "
        'Reply with JSON: {"tags": [str], "category": str}.'
    ),
}

# Options forwarded to the model API instead of the prompt
_MODEL_PARAMS = ("temperature", "max_tokens", "top_p")

_INVALID_REQUEST_STATUSES = {400, 401, 403, 404, 409, 413, 422}
_NETWORK_STATUSES = {408, 502, 503, 504}


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response, provider: str) -> ProviderError:
    """Turn a non-2xx response into a classified ProviderError."""
    status = response.status_code
    body = response.text[:500]
    message = f"HTTP {status}: {body}" if body else f"HTTP {status}"
    retry_after = parse_retry_after(response.headers.get("retry-after"))

    if status == 429:
        kind = ErrorKind.QUOTA_EXCEEDED if "quota" in body.lower() else ErrorKind.RATE_LIMITED
    elif status == 402:
        kind = ErrorKind.QUOTA_EXCEEDED
    elif status in _INVALID_REQUEST_STATUSES:
        kind = ErrorKind.INVALID_REQUEST
    elif status in _NETWORK_STATUSES:
        kind = ErrorKind.NETWORK_ERROR
    elif status >= 500:
        kind = ErrorKind.MODEL_ERROR
    else:
        kind = ErrorKind.UNKNOWN

    return ProviderError(
        kind, message, provider=provider, retry_after=retry_after, status_code=status
    )


def render_input(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, default=str)


def parse_model_output(text: str) -> Any:
    """Models are asked for JSON; fall back to the raw text when they do not comply."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        stripped = stripped.removeprefix("json").strip()
    try:
        return json.loads(stripped)
    except ValueError:
        return text


class HTTPProvider(ProviderAdapter):
    """Shared request/response handling for remote providers."""

    default_base_url = ""

    def __init__(
        self,
        name: str,
        settings: ProviderSettings,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(name)
        self.settings = settings
        self.base_url = settings.base_url or self.default_base_url
        self._http_client = http_client
        self._owned_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._owned_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def build_request(
        self, task_type: str, payload: Any, options: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Return (path, json body) for a task."""
        ...

    @abstractmethod
    def parse_response(self, task_type: str, body: Any) -> Any:
        ...

    def split_options(self, options: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split merged options into model parameters and task parameters."""
        merged = {**self.settings.options, **options}
        model_params = {k: merged.pop(k) for k in _MODEL_PARAMS if k in merged}
        return model_params, merged

    async def invoke(self, task_type: str, payload: Any, options: dict[str, Any]) -> Any:
        path, body = self.build_request(task_type, payload, options)
        url = f"{self.base_url}{path}"

        try:
            with timer("provider_http_request", {"provider": self.name, "task_type": task_type}):
                response = await self.client.post(
                    url, json=body, headers=self.headers(), timeout=self.settings.timeout
                )
        except httpx.HTTPError as e:
            raise classify_exception(e, self.name) from e

        if response.status_code >= 400:
            error = classify_response(response, self.name)
            logger.warning(
                f"Provider {self.name} returned HTTP {response.status_code}",
                provider=self.name,
                kind=error.kind.value,
            )
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                ErrorKind.MODEL_ERROR, f"unparseable response body: {e}", provider=self.name
            ) from e

        return self.parse_response(task_type, data)

    def _malformed(self, body: Any) -> ProviderError:
        return ProviderError(
            ErrorKind.MODEL_ERROR,
            f"unexpected response shape: {render_input(body)[:200]}",
            provider=self.name,
        )


class _ChatProvider(HTTPProvider):
    def messages_for(self, task_type: str, payload: Any, task_params: dict[str, Any]):
        instruction = TASK_INSTRUCTIONS.get(
            task_type, f"Perform the task '{task_type}' on the input. Reply with JSON."
        )
        content = f"Input:\n{render_input(payload)}"
        if task_params:
            content += f"\n\nParameters: {json.dumps(task_params, default=str)}"
        return instruction, content


class OpenAIProvider(_ChatProvider):
    """OpenAI chat-completions API (or any compatible endpoint)."""

    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o-mini"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def build_request(self, task_type, payload, options):
        model_params, task_params = self.split_options(options)
        system, user = self.messages_for(task_type, payload, task_params)
        return "/chat/completions", {
            "model": self.settings.model or self.default_model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **model_params,
        }

    def parse_response(self, task_type, body):
        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise self._malformed(body) from None
        return parse_model_output(text or "")


class AnthropicProvider(_ChatProvider):
    """Anthropic messages API."""

    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-3-5-haiku-latest"
    api_version = "2023-06-01"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["anthropic-version"] = self.api_version
        if self.settings.api_key:
            headers["x-api-key"] = self.settings.api_key
        return headers

    def build_request(self, task_type, payload, options):
        model_params, task_params = self.split_options(options)
        system, user = self.messages_for(task_type, payload, task_params)
        return "/messages", {
            "model": self.settings.model or self.default_model,
            "system": system,
            "messages": [{"role": "user", "content": user}],
            "max_tokens": model_params.pop("max_tokens", 1024),
            **model_params,
        }

    def parse_response(self, task_type, body):
        try:
            blocks = body["content"]
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        except (KeyError, TypeError, AttributeError):
            raise self._malformed(body) from None
        return parse_model_output(text)


class JSONTaskProvider(HTTPProvider):
    """Generic task service: ``POST {base_url}/tasks/{task}`` with ``{input, options}``."""

    default_base_url = "http://localhost:8080"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def build_request(self, task_type, payload, options):
        body: dict[str, Any] = {"input": payload, "options": {**self.settings.options, **options}}
        if self.settings.model:
            body["model"] = self.settings.model
        return f"/tasks/{task_type}", body

    def parse_response(self, task_type, body):
        if isinstance(body, dict) and "output" in body:
            return body["output"]
        raise self._malformed(body)


PROVIDER_KINDS: dict[str, type[HTTPProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "http": JSONTaskProvider,
}

# Kinds that can run without credentials (self-hosted services)
KEYLESS_KINDS = {"http"}
