from __future__ import annotations


class TypedCollabError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedCollabError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedCollabError):
        return exc.payload()
    return None


class ConfigError(TypedCollabError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class RepositoryReferenceError(TypedCollabError):
    """Repository reference is malformed or not supported."""

    error_code = "INVALID_REPOSITORY"
    failure_class = "validation"
    user_message = "Repository reference is invalid."


class RepositoryAcquisitionError(TypedCollabError):
    """Repository could not be cloned or the agent could not be started."""

    error_code = "REPOSITORY_ACQUISITION_ERROR"
    failure_class = "acquisition"
    user_message = "Failed to create session. Check the repo URL and try again."


class SessionCapacityError(TypedCollabError):
    """Maximum number of active sessions reached."""

    error_code = "SESSION_CAPACITY_REACHED"
    failure_class = "capacity"
    user_message = "Maximum sessions reached. End an existing session first."


class RateLimitedError(TypedCollabError):
    """Too many attempts inside the admission window."""

    error_code = "RATE_LIMITED"
    failure_class = "admission"
    user_message = "Rate limited. Try again in a minute."


class PreviewUpstreamError(TypedCollabError):
    """Preview target is not reachable."""

    error_code = "PREVIEW_UPSTREAM_ERROR"
    failure_class = "upstream"
    user_message = "Preview server is not reachable."
