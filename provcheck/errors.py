"""Error taxonomy for provisioning verification.

Every failure raised by this package derives from ProvisioningError so that
callers can tell workflow failures apart from bugs in the suite itself.
"""

from typing import Any


class ProvisioningError(Exception):
    """Base class for all provisioning verification failures."""


class ConfigurationError(ProvisioningError):
    """Invalid input detected before any platform resource is created."""


class ApiError(ProvisioningError):
    """Unexpected failure reported by the control plane."""

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.message = message
        super().__init__(self._format())

    def _format(self) -> str:
        if not self.kind:
            return self.message
        ident = f"{self.namespace}/{self.name}" if self.namespace else self.name
        return f"{self.kind} {ident}: {self.message}"


class NotFoundError(ApiError):
    """The referenced object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same name already exists."""


class WaitTimeoutError(ProvisioningError):
    """A bounded poll ran out of budget."""

    def __init__(self, description: str, timeout: float, last_state: Any = None):
        self.description = description
        self.timeout = timeout
        self.last_state = last_state
        msg = f"timed out after {timeout:g}s waiting for {description}"
        if last_state is not None:
            msg += f" (last state: {last_state})"
        super().__init__(msg)


class PodFailedError(ProvisioningError):
    """A verification pod terminated unsuccessfully."""

    def __init__(self, namespace: str, name: str, reason: str = ""):
        self.namespace = namespace
        self.name = name
        self.reason = reason
        super().__init__(f"pod {namespace}/{name} failed: {reason or 'unknown reason'}")


class InvariantViolation(ProvisioningError, AssertionError):
    """An observed property differs from the expected one."""

    def __init__(self, resource: str, prop: str, expected: Any, actual: Any):
        self.resource = resource
        self.prop = prop
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{resource}: {prop} mismatch: expected {expected!r}, got {actual!r}"
        )


class CleanupError(ProvisioningError):
    """One or more teardown actions failed."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        lines = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"{len(errors)} cleanup action(s) failed:\n{lines}")


class ParallelExecutionError(ProvisioningError):
    """One or more parallel units failed; raised after all units joined."""

    def __init__(self, failures: dict[int, BaseException], total: int):
        self.failures = failures
        self.total = total
        lines = "\n".join(
            f"  [{index}] {type(exc).__name__}: {exc}"
            for index, exc in sorted(failures.items())
        )
        super().__init__(f"{len(failures)}/{total} parallel unit(s) failed:\n{lines}")


class RouteCheckError(ProvisioningError):
    """A route did not answer with 200 through the router."""

    def __init__(self, url: str, output: str):
        self.url = url
        self.output = output
        super().__init__(f"last response from {url} was not 200:\n{output}")
