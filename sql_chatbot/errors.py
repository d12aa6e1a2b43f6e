class ChatbotError(Exception):
    """Base class for errors raised by the chatbot service."""


class UnauthorizedError(ChatbotError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(ChatbotError):
    """An account, conversation or other row is missing or not owned by the caller."""


class ValidationError(ChatbotError):
    """Input rejected before any work was done. Never retried."""


class TransientError(ChatbotError):
    """Connectivity problem or timeout that is worth retrying."""


class ExternalServiceError(ChatbotError):
    """A hosted service (language model, identity provider) failed."""


class ConnectionFailedError(ChatbotError):
    """
    Connecting to a user's external database failed.

    `user_message` is safe to show to the caller, `details` carries the
    driver's own message.
    """

    def __init__(self, user_message: str, details: str = ""):
        super().__init__(user_message)
        self.user_message = user_message
        self.details = details
