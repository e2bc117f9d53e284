"""Error taxonomy for the bootstrap and self-maintenance core.

Every user-visible failure names the step that failed and may carry
remediation hints that the CLI prints instead of a stack trace.
"""

from __future__ import annotations

CONNECTIVITY_HINTS: tuple[str, ...] = (
    "Check internet connectivity: ping -c 3 8.8.8.8",
    "Check DNS resolution: nslookup registry-1.docker.io",
    "If IPv6 is misconfigured, try disabling it: sysctl -w net.ipv6.conf.all.disable_ipv6=1",
    "Restart the Docker daemon: systemctl restart docker",
)


class AutoUpdaterError(Exception):
    """Base class for all failures raised by this package."""

    default_step = "autoupdater"

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        hints: list[str] | tuple[str, ...] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step or self.default_step
        self.hints: list[str] = list(hints or [])


class IntegrityError(AutoUpdaterError):
    """Digest of a fetched or cached artifact does not match its pinned value."""

    default_step = "integrity"


class NetworkError(AutoUpdaterError):
    """A download or API call could not reach its peer."""

    default_step = "network"


class NotFoundError(AutoUpdaterError):
    """The named package is unknown to the AutoUpdater service."""

    default_step = "api"


class ServiceUnavailableError(NetworkError):
    """The AutoUpdater service itself is not reachable or not serving."""

    default_step = "api"


class ApiError(AutoUpdaterError):
    """Non-2xx response from the AutoUpdater API other than a missing package."""

    default_step = "api"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ValidationError(AutoUpdaterError):
    """Malformed input, detected before any side effect."""

    default_step = "validation"


class ProvisioningError(AutoUpdaterError):
    """A privileged host mutation failed; the host is safe to re-provision."""

    default_step = "provisioning"


class LaunchExhaustedError(AutoUpdaterError):
    """The retry budget for bringing up the workload was consumed."""

    default_step = "launch"
