class ZapBotError(Exception):
    """Base class for every error raised inside the responder pipeline."""


class ConfigLoadError(ZapBotError):
    """Persisted bot configuration could not be read or parsed."""


class StatsLoadError(ZapBotError):
    """Persisted statistics could not be read or parsed."""


class PersistError(ZapBotError):
    """Writing a JSON document to durable storage failed."""


class AIError(ZapBotError):
    """The generative model did not produce a usable reply."""


class EmptyResponse(AIError):
    def __init__(self, message: str = "Empty response from the AI model"):
        super().__init__(message)


class TransportFailure(AIError):
    """Network or SDK failure while calling the model."""


class DeliveryError(ZapBotError):
    """Sending a queued reply to WhatsApp failed."""
