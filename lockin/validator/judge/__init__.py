"""Language-model proof adjudication."""

from .backends import InferenceBackend, OllamaBackend, OpenAIChatBackend, build_backend
from .judge import Judge
from .parsers import parse_response
from .prompt import build_prompt

__all__ = [
    "InferenceBackend",
    "Judge",
    "OllamaBackend",
    "OpenAIChatBackend",
    "build_backend",
    "build_prompt",
    "parse_response",
]
