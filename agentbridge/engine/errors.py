"""Exception hierarchy for provider orchestration.

Specific exceptions for each failure mode. Orchestrators turn these
into exactly one terminal error chunk via error_chunk_for().
"""
from __future__ import annotations

from agentbridge.adapters.chunks import AuthError as AuthErrorChunk
from agentbridge.adapters.chunks import Chunk, Error


class BridgeError(Exception):
    """Base exception for all agentbridge errors."""


class AuthError(BridgeError):
    """Missing or invalid credentials. Never retried automatically."""


class RateLimitedError(BridgeError):
    """Backend reported a rate limit."""


class OverloadedError(BridgeError):
    """Backend reported it is overloaded."""


class ProcessCrashError(BridgeError):
    """A backend CLI or server exited unexpectedly."""
    def __init__(self, name: str, returncode: int | None, detail: str = ""):
        self.name = name
        self.returncode = returncode
        self.detail = detail
        msg = f"{name} exited unexpectedly (rc={returncode})"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ExecutableNotFoundError(BridgeError):
    """The provider binary could not be resolved."""
    def __init__(self, provider_name: str, hint: str = ""):
        self.provider_name = provider_name
        self.hint = hint
        msg = f"{provider_name} binary not found"
        if hint:
            msg = f"{msg}. {hint}"
        super().__init__(msg)


class BackendNetworkError(BridgeError):
    """The backend could not be reached or the stream broke."""


class StartupTimeoutError(BridgeError):
    """A spawned server failed its health check within the bound."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Server startup timeout after {timeout_seconds}s"
        )


class ProtocolError(BridgeError):
    """Structurally valid but unrecognized native event.

    Logged and ignored; never surfaced to the user.
    """


class UnknownBackendError(BridgeError):
    """Catch-all carrying the raw backend message for diagnostics."""


class ProviderNotRegisteredError(BridgeError):
    """Requested provider id is not in the registry."""
    def __init__(self, provider_id: str, available: list[str]):
        self.provider_id = provider_id
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Provider '{provider_id}' not registered. "
            f"Available: {avail_str}"
        )


def classify_error_message(message: str) -> type[BridgeError]:
    """Map a free-form backend message to an error class.

    Substring matching is a legacy fallback for backends without a typed
    error discriminator (Codex, Claude). Do not use it for new
    providers.
    """
    lowered = message.lower()
    if (
        "authentication" in lowered
        or "api_key" in lowered
        or "401" in lowered
        or "unauthorized" in lowered
    ):
        return AuthError
    if "rate_limit" in lowered or "rate limit" in lowered or "429" in lowered:
        return RateLimitedError
    if "overload" in lowered:
        return OverloadedError
    if (
        "econnrefused" in lowered
        or "connection refused" in lowered
        or "network" in lowered
    ):
        return BackendNetworkError
    return UnknownBackendError


_ERROR_CONTEXT: dict[type[BridgeError], str] = {
    RateLimitedError: "Rate limit exceeded",
    OverloadedError: "Backend is overloaded, try again later",
    ProcessCrashError: "Backend process crashed",
    ExecutableNotFoundError: "Required executable not found",
    BackendNetworkError: "Network error - check your connection",
    StartupTimeoutError: "Server failed to start",
}


def error_chunk_for(exc: BaseException, context: str | None = None) -> Chunk:
    """Build the single terminal chunk that reports *exc* to the UI."""
    if isinstance(exc, AuthError):
        return AuthErrorChunk(error_text=str(exc) or "Authentication failed")
    prefix = context
    if prefix is None:
        for cls, label in _ERROR_CONTEXT.items():
            if isinstance(exc, cls):
                prefix = label
                break
    text = str(exc) or exc.__class__.__name__
    if prefix:
        text = f"{prefix}: {text}"
    return Error(
        error_text=text,
        debug_info={"category": exc.__class__.__name__},
    )
