"""Failure kinds of the chat pipeline.

Each carries the HTTP status and reason code the router renders, so the
client can tell a misconfigured server from a rejected key, a timeout or a
plain upstream hiccup. Quota denial is not here: the gate returns a Decision.
"""


class ChatError(Exception):
    status_code = 500
    reason = "chat_error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigurationError(ChatError):
    """Missing or malformed upstream credentials. Shown verbatim to the operator."""

    status_code = 500
    reason = "configuration_error"
    default_message = "The AI service is not configured."


class InvalidCredentialError(ChatError):
    status_code = 401
    reason = "invalid_api_key"
    default_message = (
        "Invalid API key. Please check that your GEMINI_API_KEY is correct "
        "and has the proper permissions."
    )


class ModelPermissionDenied(ChatError):
    status_code = 403
    reason = "permission_denied"
    default_message = "Permission denied. Please ensure your API key has access to the Gemini API."


class UpstreamError(ChatError):
    status_code = 500
    reason = "upstream_error"
    default_message = "Failed to get response from AI. Please try again."


class ModelTimeoutError(ChatError):
    status_code = 504
    reason = "timeout"
    default_message = "The AI service took too long to respond. Please try again."


class PersistenceError(Exception):
    """A store write failed after the model already answered. Never user-fatal."""


class ConversationNotFound(ChatError):
    """The selected conversation does not exist or belongs to someone else."""

    status_code = 404
    reason = "conversation_not_found"
    default_message = "Conversation not found."


class StoreUnavailableError(ChatError):
    status_code = 503
    reason = "store_unavailable"
    default_message = "Chat history is temporarily unavailable. Please try again."
