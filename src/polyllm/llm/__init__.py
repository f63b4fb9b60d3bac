"""Request engine: retry, stream normalisation, response structuring."""

from polyllm.llm.dispatcher import ModelHandle
from polyllm.llm.providers import PROVIDERS, Provider, create_provider
from polyllm.llm.response_parser import parse_response
from polyllm.llm.retry import RetryPolicy, execute_with_retry
from polyllm.llm.streaming import Dialect, Framing, create_normalizer, simulate_stream
from polyllm.llm.transport import HttpTransport, ProviderSpec, Transport

__all__ = [
    "Dialect",
    "Framing",
    "HttpTransport",
    "ModelHandle",
    "PROVIDERS",
    "Provider",
    "ProviderSpec",
    "RetryPolicy",
    "Transport",
    "create_normalizer",
    "create_provider",
    "execute_with_retry",
    "parse_response",
    "simulate_stream",
]
