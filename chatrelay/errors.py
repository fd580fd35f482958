"""
Exception hierarchy for chatrelay.
The HTTP layer maps each of these to a status code (see main.py).
"""


class ChatRelayError(Exception):
    """Base exception for chatrelay."""
    status_code = 500


class UnsupportedModelError(ChatRelayError):
    """No registered provider claims the requested model."""
    status_code = 400

    def __init__(self, model: str):
        super().__init__(f"No provider for model: {model}")
        self.model = model


class ProviderConflictError(ChatRelayError):
    """Two providers claim the same exact model id."""


class ProviderError(ChatRelayError):
    """An upstream provider call failed or sent a malformed chunk."""
    status_code = 502

    def __init__(self, provider: str, message: str):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider


class PricingError(ChatRelayError):
    """No price entry for a model that was nonetheless served."""

    def __init__(self, model: str):
        super().__init__(f"No pricing for model: {model}")
        self.model = model


class ConversationNotFoundError(ChatRelayError):
    status_code = 404

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ConversationLimitError(ChatRelayError):
    """Anonymous conversation reached its message cap."""
    status_code = 429


class MessageTooLongError(ChatRelayError):
    status_code = 400


class ModelNotAllowedError(ChatRelayError):
    status_code = 400


class RateLimitError(ChatRelayError):
    status_code = 429


class AuthenticationError(ChatRelayError):
    """Request arrived without a user id from the auth gateway."""
    status_code = 401


class ForbiddenClientError(ChatRelayError):
    status_code = 403
