"""
Inference gateway module for LogTrains.

The text-generation engine is an external collaborator. The pipeline only
ever calls one operation on it, so any engine can be plugged in.

Components:
    - InferenceGateway: Abstract base class for all engines
    - OllamaGateway: Gateway implementation using a local Ollama server

Usage:
    from logtrains.gateway import OllamaGateway

    with OllamaGateway.from_model_config(settings.model) as gateway:
        answer = gateway.generate(prompt, settings.model)
"""

from logtrains.gateway.base import InferenceGateway, TokenCallback
from logtrains.gateway.ollama import OllamaGateway

__all__ = [
    "InferenceGateway",
    "OllamaGateway",
    "TokenCallback",
]
