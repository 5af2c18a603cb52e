
from .llm_client import ChatCompletionClient

__all__ = ["ChatCompletionClient"]
