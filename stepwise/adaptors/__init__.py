"""Model adaptors for stepwise.

This module provides implementations of ModelAdaptor for various LLM providers.
"""

from stepwise.adaptors.openai import OpenAIAdaptor

__all__ = ["OpenAIAdaptor"]

# Conditional imports for optional SDK-based adaptors
try:
    from stepwise.adaptors.anthropic import AnthropicAdaptor

    __all__.append("AnthropicAdaptor")
except ImportError:
    pass

try:
    from stepwise.adaptors.ollama import OllamaAdaptor

    __all__.append("OllamaAdaptor")
except ImportError:
    pass
