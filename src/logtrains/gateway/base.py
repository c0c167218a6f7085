"""
Base class for inference gateways.

The pipeline depends on exactly one operation of the text-generation
engine: turn a prompt into text. Model loading, weights and forward passes
stay behind this interface.

Design Principles:
    - One operation: generate(prompt, model_config) -> str
    - Failures surface as InferenceError subclasses, never raw client errors
    - No retries inside a gateway; retry policy belongs to the caller
    - Cancellation leaves no shared state behind
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from logtrains.prompt import Prompt
from logtrains.schema import ModelConfig

# Receives each generated fragment as it arrives
TokenCallback = Callable[[str], None]


class InferenceGateway(ABC):
    """
    Abstract text-generation capability.

    Implementations:
        - OllamaGateway: Local models served by Ollama

    Example Implementation:
        class CannedGateway(InferenceGateway):
            def generate(self, prompt, model_config, on_token=None, cancel_event=None):
                return "Looks like a missing semicolon."
    """

    @abstractmethod
    def generate(
        self,
        prompt: Prompt,
        model_config: ModelConfig,
        on_token: TokenCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """
        Generate an answer for ``prompt``.

        Args:
            prompt: The composed request
            model_config: Preset, quantization and sampling settings
            on_token: Optional callback receiving fragments as they stream
            cancel_event: Optional event; once set, generation stops

        Returns:
            The complete generated text

        Raises:
            ModelUnavailableError: Engine unreachable or weights not present
            ResourceExhaustedError: Engine ran out of memory or compute
            InferenceCancelledError: Cancelled via event or interrupt
            InferenceTimeoutError: Engine did not answer in time
            InferenceResponseError: Engine answered with something unusable
        """
        ...

    def close(self) -> None:
        """Release any held resources."""

    def __enter__(self) -> "InferenceGateway":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_name(self) -> str:
        """Return the gateway's name for logging."""
        return self.__class__.__name__
