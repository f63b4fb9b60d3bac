"""polyllm: one chat interface over many LLM providers."""

from polyllm.config import PolyConfig, ProfileSpec, load_config, open_model
from polyllm.errors import (
    FragmentParseError,
    PolyLLMError,
    ProtocolError,
    RetryExhausted,
    TransportError,
)
from polyllm.llm import ModelHandle, Provider, RetryPolicy, create_provider
from polyllm.types import (
    ChatMessage,
    ChatOptions,
    ChatResult,
    CodeBlock,
    Completion,
    ParsedResponse,
    StreamError,
    TextDelta,
    Usage,
)

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "ChatOptions",
    "ChatResult",
    "CodeBlock",
    "Completion",
    "FragmentParseError",
    "ModelHandle",
    "ParsedResponse",
    "PolyConfig",
    "PolyLLMError",
    "ProfileSpec",
    "Provider",
    "ProtocolError",
    "RetryExhausted",
    "RetryPolicy",
    "StreamError",
    "TextDelta",
    "TransportError",
    "Usage",
    "create_provider",
    "load_config",
    "open_model",
]
