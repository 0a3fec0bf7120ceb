class TributaryError(Exception):
    """Base class for every error raised by tributary itself.

    Errors coming from the provider client or the network (``openai``,
    ``httpx``) are not wrapped and reach the caller unchanged.
    """


class CapabilityError(TributaryError):
    """The adapter does not implement the requested operation."""

    def __init__(self, adapter_name: str, operation: str):
        self.adapter_name = adapter_name
        self.operation = operation
        super().__init__(
            f"Adapter '{adapter_name}' does not support {operation}"
        )


class ConfigurationError(TributaryError):
    """Raised by an adapter's ``validate()`` when it cannot be used."""


class StreamStateError(TributaryError):
    """A stream was used in a way its current state does not allow.

    Streams are single-consumer: they can be iterated once, and the
    final completion cannot be requested while another consumer is
    still draining fragments.
    """


class FinalizationError(TributaryError):
    """A final completion could not be produced from the stream."""
