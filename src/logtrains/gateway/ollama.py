"""
Ollama inference gateway.

This module implements the InferenceGateway interface against a local
Ollama server, which owns model download, quantized weights and execution.

Requirements:
    - Ollama must be installed and running (`ollama serve`)
    - The model must be pulled (`ollama pull tinyllama:1.1b-chat-v1-q4_K_M`),
      or pulled through `logtrains explain --update-model`

Usage:
    from logtrains.gateway.ollama import OllamaGateway
    from logtrains.schema import ModelConfig

    config = ModelConfig(preset="tiny")
    with OllamaGateway.from_model_config(config) as gateway:
        answer = gateway.generate(prompt, config, on_token=print)
"""

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

import httpx

from logtrains.errors import (
    InferenceCancelledError,
    InferenceResponseError,
    InferenceTimeoutError,
    ModelUnavailableError,
    ResourceExhaustedError,
)
from logtrains.gateway.base import InferenceGateway, TokenCallback
from logtrains.prompt import Prompt
from logtrains.schema import ModelConfig

logger = logging.getLogger(__name__)

BACKEND = "ollama"
DEFAULT_BASE_URL = "http://localhost:11434"

# Substrings Ollama uses when a model does not fit in memory
RESOURCE_ERROR_HINTS = (
    "out of memory",
    "requires more system memory",
    "insufficient memory",
    "cuda error",
    "not enough memory",
)


def _is_resource_error(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in RESOURCE_ERROR_HINTS)


class OllamaGateway(InferenceGateway):
    """
    Gateway implementation using Ollama's chat API.

    Responses are streamed so fragments can be shown as they arrive and
    cancellation takes effect between fragments.

    Example:
        gateway = OllamaGateway()
        ok, message = gateway.check_connection("tinyllama:1.1b-chat-v1-q4_K_M")
        answer = gateway.generate(prompt, ModelConfig())
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the Ollama gateway.

        Args:
            base_url: Where Ollama listens
            timeout_seconds: Read timeout for a single request
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.Client | None = None

    @classmethod
    def from_model_config(
        cls,
        config: ModelConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> "OllamaGateway":
        """Create a gateway pointing at the configured engine."""
        return cls(
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            transport=transport,
        )

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    # =========================================================================
    # Generation
    # =========================================================================

    def generate(
        self,
        prompt: Prompt,
        model_config: ModelConfig,
        on_token: TokenCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """
        Generate an answer with Ollama.

        Raises:
            ModelUnavailableError: Ollama unreachable or model not pulled
            ResourceExhaustedError: Model does not fit in memory
            InferenceCancelledError: cancel_event set or KeyboardInterrupt
            InferenceTimeoutError: No response within the timeout
            InferenceResponseError: Malformed or empty response
        """
        model = model_config.resolved_model()
        payload = {
            "model": model,
            "messages": prompt.messages(),
            "stream": True,
            "options": self._options(model_config),
        }
        logger.debug("POST %s/api/chat model=%s", self.base_url, model)

        fragments: list[str] = []
        try:
            with self._get_client().stream("POST", "/api/chat", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self._raise_for_status(response, model)

                for line in response.iter_lines():
                    if cancel_event is not None and cancel_event.is_set():
                        raise InferenceCancelledError(
                            backend=BACKEND,
                            model=model,
                            partial_output="".join(fragments),
                        )
                    if not line.strip():
                        continue
                    chunk = self._parse_chunk(line, model)
                    content = (chunk.get("message") or {}).get("content") or ""
                    if content:
                        fragments.append(content)
                        if on_token is not None:
                            on_token(content)
                    if chunk.get("done"):
                        break
        except KeyboardInterrupt as e:
            raise InferenceCancelledError(
                backend=BACKEND,
                model=model,
                partial_output="".join(fragments),
            ) from e
        except httpx.ConnectError as e:
            raise ModelUnavailableError(
                backend=BACKEND,
                model=model,
                url=self.base_url,
                underlying_error=str(e),
            ) from e
        except httpx.TimeoutException as e:
            raise InferenceTimeoutError(
                backend=BACKEND,
                model=model,
                timeout_seconds=self.timeout_seconds,
            ) from e
        except httpx.HTTPError as e:
            raise InferenceResponseError(
                backend=BACKEND,
                model=model,
                underlying_error=str(e),
            ) from e

        answer = "".join(fragments)
        if not answer.strip():
            raise InferenceResponseError(
                backend=BACKEND,
                model=model,
                underlying_error="Empty response from model",
            )
        return answer

    def _options(self, config: ModelConfig) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": config.temperature,
            "top_p": config.top_p,
            "num_predict": config.max_new_tokens,
            "num_ctx": config.context_tokens,
        }
        if config.seed is not None:
            options["seed"] = config.seed
        return options

    def _parse_chunk(self, line: str, model: str) -> dict[str, Any]:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as e:
            raise InferenceResponseError(
                backend=BACKEND,
                model=model,
                raw_response=line,
                underlying_error=f"Invalid JSON from Ollama: {e}",
            ) from e
        if not isinstance(chunk, dict):
            raise InferenceResponseError(
                backend=BACKEND,
                model=model,
                raw_response=line,
                underlying_error="Expected a JSON object",
            )
        if "error" in chunk:
            message = str(chunk["error"])
            if _is_resource_error(message):
                raise ResourceExhaustedError(backend=BACKEND, model=model, underlying_error=message)
            raise InferenceResponseError(
                backend=BACKEND,
                model=model,
                raw_response=line,
                underlying_error=message,
            )
        return chunk

    def _raise_for_status(self, response: httpx.Response, model: str) -> None:
        text = response.text
        try:
            message = str(response.json().get("error", text))
        except (json.JSONDecodeError, AttributeError):
            message = text

        if response.status_code == 404:
            raise ModelUnavailableError(
                backend=BACKEND,
                model=model,
                url=self.base_url,
                underlying_error=message,
                available_models=self.list_models(),
            )
        if _is_resource_error(message):
            raise ResourceExhaustedError(backend=BACKEND, model=model, underlying_error=message)
        raise InferenceResponseError(
            backend=BACKEND,
            model=model,
            raw_response=text,
            underlying_error=f"HTTP {response.status_code}: {message}",
        )

    # =========================================================================
    # Model Management
    # =========================================================================

    def list_models(self) -> list[str]:
        """List models available in Ollama (empty if it cannot be reached)."""
        try:
            response = self._get_client().get("/api/tags")
            if response.status_code == 200:
                return [m["name"] for m in response.json().get("models", [])]
        except (httpx.HTTPError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.debug("Could not list Ollama models: %s", e)
        return []

    def pull_model(
        self,
        model: str,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        """
        Ask Ollama to download (or verify) ``model``.

        Raises:
            ModelUnavailableError: Ollama unreachable or the pull failed
        """
        try:
            with self._get_client().stream(
                "POST",
                "/api/pull",
                json={"model": model, "stream": True},
                timeout=None,
            ) as response:
                if response.status_code != 200:
                    response.read()
                    raise ModelUnavailableError(
                        backend=BACKEND,
                        model=model,
                        url=self.base_url,
                        underlying_error=f"pull failed with HTTP {response.status_code}",
                    )
                last_status = ""
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    status = json.loads(line)
                    if "error" in status:
                        raise ModelUnavailableError(
                            backend=BACKEND,
                            model=model,
                            url=self.base_url,
                            underlying_error=str(status["error"]),
                        )
                    current = status.get("status", "")
                    if current and current != last_status:
                        last_status = current
                        if on_status is not None:
                            on_status(current)
        except httpx.HTTPError as e:
            raise ModelUnavailableError(
                backend=BACKEND,
                model=model,
                url=self.base_url,
                underlying_error=str(e),
            ) from e
        except json.JSONDecodeError as e:
            raise ModelUnavailableError(
                backend=BACKEND,
                model=model,
                url=self.base_url,
                underlying_error=f"Invalid pull progress from Ollama: {e}",
            ) from e

    def check_connection(self, model: str) -> tuple[bool, str]:
        """
        Check if Ollama is accessible and the model is available.

        Returns:
            Tuple of (is_ok, message)
        """
        try:
            response = self._get_client().get("/api/tags")
            if response.status_code != 200:
                return False, f"Ollama returned HTTP {response.status_code}"

            models = [m["name"] for m in response.json().get("models", [])]
            if not models:
                return False, f"No models available. Run: ollama pull {model}"

            if model not in models:
                return (
                    False,
                    f"Model '{model}' not found. Available: {', '.join(models[:3])}",
                )

            return True, f"Connected to Ollama, model '{model}' available"

        except httpx.ConnectError:
            return False, f"Cannot connect to Ollama at {self.base_url}. Is it running?"
        except (httpx.HTTPError, json.JSONDecodeError, KeyError, TypeError) as e:
            return False, f"Error checking Ollama: {e}"

    def get_name(self) -> str:
        """Return gateway name."""
        return f"OllamaGateway({self.base_url})"
