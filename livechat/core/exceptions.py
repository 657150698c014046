"""Application exception classes."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, code: str, status_code: int = 400) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


# --- Validation (400) ---


class ChatValidationError(AppException):
    """Request rejected locally before any network call."""

    def __init__(self, message: str = "Invalid chat request") -> None:
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=400)


class InvalidRatingError(AppException):
    """Rating outside the accepted 1-5 range."""

    def __init__(self) -> None:
        super().__init__(
            message="Rating must be between 1 and 5",
            code="INVALID_RATING",
            status_code=400,
        )


class NoActiveSessionError(AppException):
    """Operation requires a session id but none is known."""

    def __init__(self) -> None:
        super().__init__(
            message="No active session",
            code="NO_ACTIVE_SESSION",
            status_code=400,
        )


# --- Not Found (404) ---


class SessionNotFoundError(AppException):
    """Chat session not found."""

    def __init__(self) -> None:
        super().__init__(
            message="Session not found",
            code="SESSION_NOT_FOUND",
            status_code=404,
        )


# --- Conflict (409) ---


class SessionClosedError(AppException):
    """Chat session is already closed."""

    def __init__(self) -> None:
        super().__init__(
            message="Session is already closed",
            code="SESSION_CLOSED",
            status_code=409,
        )


# --- Upstream (502) ---


class ChatApiError(AppException):
    """Remote chat backend call failed."""

    def __init__(
        self, message: str = "Chat server request failed", status_code: int = 502
    ) -> None:
        super().__init__(
            message=message, code="CHAT_API_ERROR", status_code=status_code
        )


class SessionCreateError(AppException):
    """Backend accepted the request but returned no session id."""

    def __init__(self) -> None:
        super().__init__(
            message="Failed to start chat session",
            code="SESSION_CREATE_FAILED",
            status_code=502,
        )


class MessageDeliveryError(AppException):
    """Message could not be delivered by socket or REST."""

    def __init__(self, message: str = "Failed to send message") -> None:
        super().__init__(
            message=message, code="MESSAGE_DELIVERY_FAILED", status_code=502
        )


class TokenRequestError(AppException):
    """Identity provider did not issue a token."""

    def __init__(self, message: str = "Failed to obtain access token") -> None:
        super().__init__(message=message, code="TOKEN_REQUEST_FAILED", status_code=401)


# --- Transport (503) ---


class TransportError(AppException):
    """Real-time transport failure."""

    def __init__(
        self, message: str = "Transport failure", code: str = "TRANSPORT_ERROR"
    ) -> None:
        super().__init__(message=message, code=code, status_code=503)


class TransportConnectError(TransportError):
    """Socket did not open within the connect timeout."""

    def __init__(self, message: str = "Socket connection failed") -> None:
        super().__init__(message=message, code="TRANSPORT_CONNECT_FAILED")


class SocketUnavailableError(TransportError):
    """Environment does not allow a socket for this session."""

    def __init__(self, message: str = "Socket not available in this context") -> None:
        super().__init__(message=message, code="SOCKET_UNAVAILABLE")
