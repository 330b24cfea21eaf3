"""
Error taxonomy shared by every layer of the client.

Every error carries a stable `code`, a human-readable `message` and a list of
`suggestions` so the caller layer can render it without inspecting types.

Only `EndpointUnsupported` is recovered locally (Modern -> Legacy fallback).
Everything else propagates to the facade, which converts it with
`normalize_error()` into the `{message, code, suggestions}` envelope.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence


class JamfBridgeError(RuntimeError):
    """
    Base class for all client errors.
    """

    code: str = "UNKNOWN_ERROR"
    default_suggestions: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        suggestions: Sequence[str] | None = None,
        status_code: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = str(message)
        if code:
            self.code = code
        self.suggestions = list(suggestions if suggestions is not None else self.default_suggestions)
        self.status_code = status_code
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "suggestions": list(self.suggestions),
        }
        if self.status_code is not None:
            out["status_code"] = self.status_code
        return out


class ConfigurationError(JamfBridgeError):
    code = "CONFIGURATION_ERROR"
    default_suggestions = ("Check JAMF_URL and the JAMF_* credential environment variables",)


class AuthenticationRequired(JamfBridgeError):
    """
    Raised when no valid credential is available for the target endpoint family.
    """

    code = "AUTHENTICATION_REQUIRED"
    default_suggestions = (
        "Verify the OAuth2 client id/secret or the username/password",
        "Confirm the API role grants access to this endpoint",
    )


class TransportError(JamfBridgeError):
    """
    Network-level failure (connect, read timeout, TLS) with no HTTP response.
    """

    code = "TRANSPORT_ERROR"
    default_suggestions = (
        "Check network connectivity to the Jamf server",
        "If using a self-signed certificate, set JAMF_ALLOW_INSECURE=true for testing only",
    )


class ApiRequestError(JamfBridgeError):
    """
    The backend answered with a non-2xx status.

    The message names method, path and status only; response bodies may echo
    sensitive payloads and are kept on `response_excerpt` instead.
    """

    code = "API_ERROR"

    def __init__(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        response_excerpt: str = "",
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(
            f"{method.upper()} {path} failed with HTTP {status_code}",
            code=_code_for_status(status_code),
            suggestions=_suggestions_for_status(status_code),
            status_code=status_code,
            context={"method": method.upper(), "path": path},
        )
        self.method = method.upper()
        self.path = path
        self.response_excerpt = response_excerpt
        self.retry_after_s = retry_after_s

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class ResourceNotFound(ApiRequestError):
    pass


class EndpointUnsupported(JamfBridgeError):
    """
    The Modern endpoint cannot serve this operation (404/501 or transport
    failure). Recovered locally by falling back to the Legacy endpoint.
    """

    code = "ENDPOINT_UNSUPPORTED"

    def __init__(self, message: str, *, cause: BaseException | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class UnsupportedOperation(JamfBridgeError):
    """
    The resource type does not accept this verb (inventory records are read-only).
    """

    code = "UNSUPPORTED_OPERATION"


class ConflictExceeded(JamfBridgeError):
    """
    Optimistic-concurrency conflicts persisted past the configured retries.
    """

    code = "CONFLICT_EXCEEDED"
    default_suggestions = (
        "Another writer is modifying this resource; retry later",
        "Increase JAMF_CONFLICT_RETRY_MAX or JAMF_CONFLICT_RETRY_DELAY_MS",
    )

    def __init__(self, last_error: ApiRequestError, *, attempts: int) -> None:
        super().__init__(
            last_error.message,
            status_code=last_error.status_code,
            context={**last_error.context, "attempts": attempts},
        )
        self.last_error = last_error
        self.attempts = attempts


class VerificationFailed(JamfBridgeError):
    """
    The write was accepted but the requested fields never converged.

    `mismatches` is the list of `(field, representation)` pairs seen on the
    final read. It is empty when the final read agreed but the run of
    consistent reads was still shorter than required.
    """

    code = "VERIFICATION_FAILED"
    default_suggestions = (
        "The server accepted the write but did not persist every requested field",
        "Re-read the resource and retry the update, or raise JAMF_VERIFY_ATTEMPTS",
    )

    def __init__(
        self,
        *,
        resource_type: str,
        resource_id: str,
        mismatches: Sequence[tuple[str, str]],
        attempts: int,
        consistent_reads: int = 0,
        required_consistent_reads: int = 1,
    ) -> None:
        if mismatches:
            detail = ", ".join(f"{field} ({rep})" for field, rep in mismatches)
        else:
            detail = f"only {consistent_reads} of {required_consistent_reads} required consecutive consistent reads"
        super().__init__(
            f"{resource_type} {resource_id} did not converge after {attempts} read attempts: {detail}",
            context={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "mismatches": [{"field": f, "representation": r} for f, r in mismatches],
                "attempts": attempts,
                "consistent_reads": consistent_reads,
                "required_consistent_reads": required_consistent_reads,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.mismatches = list(mismatches)
        self.attempts = attempts
        self.consistent_reads = consistent_reads
        self.required_consistent_reads = required_consistent_reads

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["details"] = {
            "mismatches": self.context["mismatches"],
            "attempts": self.attempts,
            "consistent_reads": self.consistent_reads,
            "required_consistent_reads": self.required_consistent_reads,
        }
        return out


class CircuitOpen(JamfBridgeError):
    code = "CIRCUIT_OPEN"

    def __init__(self, key: str, *, retry_in_s: float) -> None:
        wait = max(0, int(retry_in_s + 0.999))
        super().__init__(
            f"Circuit breaker for {key} is OPEN - too many failures",
            suggestions=[f"Wait {wait} seconds before retrying"],
            context={"breaker": key},
        )
        self.key = key
        self.retry_in_s = retry_in_s


class WriteDisabled(JamfBridgeError):
    code = "WRITE_DISABLED"
    default_suggestions = (
        "The client is in read-only mode",
        "Set JAMF_WRITE_ENABLED=true (automation contexts) and JAMF_READ_ONLY=false to allow writes",
    )


class ConfirmationRequired(JamfBridgeError):
    code = "CONFIRMATION_REQUIRED"
    default_suggestions = ("Re-run the operation with confirm=true",)


def _code_for_status(status: int) -> str:
    return {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        429: "RATE_LIMITED",
        501: "NOT_IMPLEMENTED",
    }.get(int(status), "SERVER_ERROR" if int(status) >= 500 else "API_ERROR")


def _suggestions_for_status(status: int) -> list[str]:
    if status == 400:
        return ["Check the request payload against the resource schema"]
    if status in (401, 403):
        return ["Verify the API role has the privilege for this operation"]
    if status == 404:
        return ["Verify the resource id exists"]
    if status == 429:
        return ["Back off and retry later"]
    if status >= 500:
        return ["The Jamf server reported an internal error; retry later"]
    return []


def is_transient(exc: BaseException) -> bool:
    """
    Default retry condition: transport failures, rate limiting and gateway errors.
    """
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, ApiRequestError):
        return exc.status_code in (429, 502, 503, 504)
    return False


def normalize_error(exc: BaseException, *, context: Optional[Mapping[str, Any]] = None) -> JamfBridgeError:
    """
    Convert any exception into the client taxonomy.
    """
    if isinstance(exc, JamfBridgeError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransportError(str(exc) or type(exc).__name__, context=context)
    return JamfBridgeError(
        str(exc) or type(exc).__name__,
        suggestions=["Check the logs for more details"],
        context=context,
    )
