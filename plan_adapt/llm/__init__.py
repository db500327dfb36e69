"""LLM backends that power the reasoning oracle and the planner."""

from .base import LLMBackend
from .litellm import LiteLLMLLM
from .watsonx import WatsonXLLM

__all__ = ["LLMBackend", "LiteLLMLLM", "WatsonXLLM"]
