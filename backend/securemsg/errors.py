from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    """Base error of the messaging layer."""
    code = "MESSAGING_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class NotAuthenticated(MessagingError):
    code = "NOT_AUTHENTICATED"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotAParticipant(MessagingError):
    code = "NOT_A_PARTICIPANT"
    status_code = status.HTTP_403_FORBIDDEN


class UserNotFound(MessagingError):
    code = "USER_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ConversationNotFound(MessagingError):
    code = "CONVERSATION_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class MessageNotFound(MessagingError):
    code = "MESSAGE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ContactNotFound(MessagingError):
    code = "CONTACT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class AlreadyParticipant(MessagingError):
    code = "ALREADY_PARTICIPANT"
    status_code = status.HTTP_409_CONFLICT


class ContactExists(MessagingError):
    code = "CONTACT_EXISTS"
    status_code = status.HTTP_409_CONFLICT


class ValidationFailed(MessagingError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class DecryptionFailed(MessagingError):
    code = "DECRYPTION_FAILED"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StoreUnavailable(MessagingError):
    code = "STORE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def create_error_response(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.code, exc.message),
    )


def register_error_handlers(app) -> None:
    app.add_exception_handler(MessagingError, messaging_error_handler)
