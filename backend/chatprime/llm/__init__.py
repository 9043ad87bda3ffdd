"""
LLM Gateway Package

Fronts an OpenAI-compatible chat completion API:
  - ModelSelector      (explicit alias → vision → large-prompt → default)
  - PromptAssembler    (document context merge + character-budget truncation)
  - ResponseCache      (bounded FIFO of buffered responses)
  - RetryingTransport  (linear backoff, 429-aware)
  - relay              (cancellable SSE pass-through)

Public API::

    from chatprime.llm import LLMGateway

    gateway = LLMGateway.from_settings(settings)
    result  = await gateway.chat(body, files, base_url=base_url)
"""

from chatprime.llm.cache import ResponseCache, make_cache_key
from chatprime.llm.gateway import GatewayResponse, LLMGateway, StreamingGatewayResponse
from chatprime.llm.prompt import PromptAssembler
from chatprime.llm.router import ModelSelector, ModelSpec
from chatprime.llm.streaming import CancelToken, relay
from chatprime.llm.transport import RetryingTransport, RetryPolicy

__all__ = [
    "CancelToken",
    "GatewayResponse",
    "LLMGateway",
    "ModelSelector",
    "ModelSpec",
    "PromptAssembler",
    "ResponseCache",
    "RetryPolicy",
    "RetryingTransport",
    "StreamingGatewayResponse",
    "make_cache_key",
    "relay",
]
