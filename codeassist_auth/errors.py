"""
Errors raised while driving a login flow.
Components convert these into result objects at their boundary; none escape SessionManager.
"""


class OAuthFlowError(Exception):
    """Base class for login flow failures. str(exc) is the user-facing message."""


class ListenerBindFailure(OAuthFlowError):
    pass


class ProviderDenied(OAuthFlowError):
    """The provider redirected back with ?error=... (e.g. access_denied)."""

    def __init__(self, error: str):
        self.error = error
        super().__init__(f"OAuth error: {error}")


class MissingParameters(OAuthFlowError):
    def __init__(self, message: str = "Missing code or state parameter"):
        super().__init__(message)


class StateMismatch(OAuthFlowError):
    def __init__(self, message: str = "State mismatch - possible CSRF attack"):
        super().__init__(message)


class MalformedState(OAuthFlowError):
    pass


class CallbackTimeout(OAuthFlowError):
    def __init__(self, message: str = "OAuth callback timeout"):
        super().__init__(message)


class ListenerStopped(OAuthFlowError):
    def __init__(self, message: str = "OAuth listener stopped"):
        super().__init__(message)


class FlowSuperseded(OAuthFlowError):
    def __init__(self, message: str = "Superseded by new OAuth flow"):
        super().__init__(message)


class ExchangeFailure(OAuthFlowError):
    pass


class MissingRefreshToken(ExchangeFailure):
    def __init__(self, message: str = "Missing refresh token in response"):
        super().__init__(message)
