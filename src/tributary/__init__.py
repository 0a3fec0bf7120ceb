from tributary.adapter import (
    Adapter,
    OpenAIAdapter,
    OpenAICompatibleAdapter,
    OpenRouter,
    ProviderStream,
)
from tributary.completion import ChatCompletionResult, Usage
from tributary.errors import (
    CapabilityError,
    ConfigurationError,
    FinalizationError,
    StreamStateError,
    TributaryError,
)
from tributary.generator import TextGenerator, text_generator
from tributary.instrumentation import configure_logging, instrument, uninstrument
from tributary.streaming import ChatCompletionStream, StreamState

__all__ = [
    "Adapter",
    "CapabilityError",
    "ChatCompletionResult",
    "ChatCompletionStream",
    "ConfigurationError",
    "FinalizationError",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "OpenRouter",
    "ProviderStream",
    "StreamState",
    "StreamStateError",
    "TextGenerator",
    "TributaryError",
    "Usage",
    "configure_logging",
    "instrument",
    "text_generator",
    "uninstrument",
]
