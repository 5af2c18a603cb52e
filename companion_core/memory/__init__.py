
from .adapter import adapt_memory
from .classifier import KeywordClassifier, TextClassifier

__all__ = ["KeywordClassifier", "TextClassifier", "adapt_memory"]
