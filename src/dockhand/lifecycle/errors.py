"""Precondition errors raised by lifecycle commands before any mutation."""
from __future__ import annotations

from collections.abc import Mapping


class LifecycleError(RuntimeError):
    """Base class for errors raised synchronously to the caller."""

    code = "APP_ERROR"

    def __init__(self, message: str, **params: object) -> None:
        super().__init__(message)
        self.params: Mapping[str, object] = dict(params)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable description of the error."""
        return {"code": self.code, "message": str(self), "params": dict(self.params)}


class AppNotFoundError(LifecycleError):
    """The app has no record, or is missing from the catalog."""

    code = "APP_ERROR_APP_NOT_FOUND"

    def __init__(self, app_id: str, message: str | None = None) -> None:
        super().__init__(message or f"App {app_id} not found", id=app_id)


class InvalidConfigError(LifecycleError):
    """The app definition or submitted form cannot be used."""

    code = "APP_ERROR_INVALID_CONFIG"

    def __init__(self, app_id: str, reason: str) -> None:
        super().__init__(f"Invalid config for app {app_id}: {reason}", id=app_id, reason=reason)


class DomainRequiredError(LifecycleError):
    """Exposure was requested without a domain."""

    code = "APP_ERROR_DOMAIN_REQUIRED_IF_EXPOSE_APP"

    def __init__(self, app_id: str) -> None:
        super().__init__(f"A domain is required to expose app {app_id}", id=app_id)


class InvalidDomainError(LifecycleError):
    """The requested domain is not a valid FQDN."""

    code = "APP_ERROR_DOMAIN_NOT_VALID"

    def __init__(self, domain: str) -> None:
        super().__init__(f"Domain {domain} is not valid", domain=domain)


class DomainInUseError(LifecycleError):
    """Another exposed app already uses the domain."""

    code = "APP_ERROR_DOMAIN_ALREADY_IN_USE"

    def __init__(self, domain: str, other_id: str) -> None:
        super().__init__(
            f"Domain {domain} is already in use by app {other_id}",
            domain=domain,
            id=other_id,
        )


class NotExposableError(LifecycleError):
    """The definition does not allow exposure."""

    code = "APP_ERROR_APP_NOT_EXPOSABLE"

    def __init__(self, app_id: str) -> None:
        super().__init__(f"App {app_id} is not exposable", id=app_id)


class ForceExposedError(LifecycleError):
    """The definition requires exposure but the form disables it."""

    code = "APP_ERROR_APP_FORCE_EXPOSED"

    def __init__(self, app_id: str) -> None:
        super().__init__(f"App {app_id} must be exposed", id=app_id)


class MinVersionError(LifecycleError):
    """The catalog requires a newer host version."""

    code = "APP_UPDATE_ERROR_MIN_HOST_VERSION"

    def __init__(self, app_id: str, required: str, current: str) -> None:
        super().__init__(
            f"App {app_id} requires host version {required} or newer (running {current})",
            id=app_id,
            minVersion=required,
            currentVersion=current,
        )


class ArchitectureNotSupportedError(LifecycleError):
    """The app does not support the host architecture."""

    code = "APP_ERROR_ARCHITECTURE_NOT_SUPPORTED"

    def __init__(self, app_id: str, architecture: str) -> None:
        super().__init__(
            f"App {app_id} does not support architecture {architecture}",
            id=app_id,
            arch=architecture,
        )


class ConflictingOperationError(LifecycleError):
    """Another lifecycle command currently owns the app."""

    code = "APP_ERROR_OPERATION_IN_PROGRESS"

    def __init__(self, app_id: str, status: str) -> None:
        super().__init__(
            f"App {app_id} is busy ({status}); try again once the current operation finishes",
            id=app_id,
            status=status,
        )


class BackupNotFoundError(LifecycleError):
    """The requested backup archive does not exist."""

    code = "APP_ERROR_BACKUP_NOT_FOUND"

    def __init__(self, app_id: str, filename: str) -> None:
        super().__init__(
            f"Backup {filename} does not exist for app {app_id}",
            id=app_id,
            filename=filename,
        )


__all__ = [
    "AppNotFoundError",
    "ArchitectureNotSupportedError",
    "BackupNotFoundError",
    "ConflictingOperationError",
    "DomainInUseError",
    "DomainRequiredError",
    "ForceExposedError",
    "InvalidConfigError",
    "InvalidDomainError",
    "LifecycleError",
    "MinVersionError",
    "NotExposableError",
]
