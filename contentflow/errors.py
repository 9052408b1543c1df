from __future__ import annotations


class ContentFlowError(Exception):
    """Base class for errors raised by contentflow."""


class StoreError(ContentFlowError):
    pass


class ClaimFailure(StoreError):
    """The claim step could not run; fatal to the whole dispatch batch."""


class BackendError(ContentFlowError):
    pass


class BackendUnavailable(BackendError):
    pass


class BackendRejected(BackendError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Backend request failed: {status_code} - {body}")
        self.status_code = status_code
        self.body = body


class TokenError(ContentFlowError):
    def __init__(self, token: str, message: str) -> None:
        super().__init__(message)
        self.token = token


class TokenNotFound(TokenError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Token expired or not found")


class TokenExpired(TokenError):
    def __init__(self, token: str) -> None:
        super().__init__(token, "Token expired")
