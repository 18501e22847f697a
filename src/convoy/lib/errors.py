"""Custom exception hierarchy for Convoy configuration and operations."""

from __future__ import annotations


class ConvoyError(Exception):
    """Base exception for all Convoy errors.

    All Convoy-specific exceptions inherit from this class, enabling
    centralized exception handling at the CLI boundary.
    """

    pass


class ConfigError(ConvoyError):
    """Exception raised for configuration errors.

    Raised when loading, parsing, or validating the desired-state file fails.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class ResolutionError(ConvoyError):
    """Base exception for service dependency resolution failures."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(message)


class ServiceNotFoundError(ResolutionError):
    """Exception raised when a requested root service is not declared."""

    def __init__(self, service: str) -> None:
        super().__init__(service, f"Service '{service}' not found")


class CircularDependencyError(ResolutionError):
    """Exception raised when the dependency graph contains a cycle.

    Attributes:
        service: The service being resolved when the cycle was detected
    """

    def __init__(self, service: str) -> None:
        super().__init__(
            service,
            f"Circular service dependency detected while resolving '{service}'",
        )


class UnknownDependencyError(ResolutionError):
    """Exception raised when a service depends on an undeclared service.

    Attributes:
        service: The service declaring the dependency
        missing: The dependency name that does not exist
    """

    def __init__(self, service: str, missing: str) -> None:
        self.missing = missing
        super().__init__(
            service, f"Service '{service}' depends on missing service '{missing}'"
        )


class PreflightError(ConvoyError):
    """Exception raised when a resource fails validation before any mutation.

    Attributes:
        resource: Name of the server or service that failed preflight
        message: Human-readable description of the failure
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        self.message = message
        super().__init__(f"Preflight failed for '{resource}': {message}")


class ProviderError(ConvoyError):
    """Exception raised when a compute provider call fails.

    Attributes:
        provider: Provider name (e.g. "hetzner")
        operation: The provider operation that failed
        message: Error details
        status_code: HTTP status code, when the failure came from an API response
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider} {operation} failed: {message}")


class DeployError(ConvoyError):
    """Exception raised when a deploy operation fails.

    Attributes:
        operation: The deploy step that failed (e.g. "deploy", "inspect")
        message: Error details
        resource: Service or server the failure applies to, if any
    """

    def __init__(
        self, operation: str, message: str, resource: str | None = None
    ) -> None:
        self.operation = operation
        self.message = message
        self.resource = resource
        super().__init__(f"Deploy error during {operation}: {message}")


class UnsafeLocalDeployError(DeployError):
    """Local deploy refused because remote servers are declared."""

    def __init__(self, service: str) -> None:
        super().__init__(
            operation="resolve_target",
            message=(
                f"Refusing local deploy of '{service}' while infra.servers is "
                "configured. Set project.deploy_mode to 'remote' or pass "
                "--allow-local-deploy."
            ),
            resource=service,
        )


class TargetServerNotFoundError(DeployError):
    """The server a service should run on is not declared."""

    def __init__(self, service: str, server: str | None) -> None:
        if server:
            message = f"target server '{server}' not found in infra.servers"
        else:
            message = "remote deploy mode requires at least one server in infra.servers"
        self.server = server
        super().__init__(
            operation="resolve_target", message=message, resource=service
        )


class UnsupportedProviderError(DeployError):
    """The target server's provider offers no direct shell access."""

    def __init__(self, service: str, provider: str) -> None:
        self.provider = provider
        super().__init__(
            operation="resolve_target",
            message=(
                f"Provider '{provider}' does not support direct container "
                f"deploys (service '{service}')"
            ),
            resource=service,
        )


class DeployVerificationFailedError(DeployError):
    """The container could not be found after a deploy reported success."""

    def __init__(self, service: str) -> None:
        super().__init__(
            operation="inspect",
            message=f"Deployed service '{service}' was not found after deploy",
            resource=service,
        )


class RolloutFailedError(DeployError):
    """One or more services failed to deploy during a rollout.

    Attributes:
        failed: Names of the services that failed
        report: The rollout report, when the caller wants to render it
    """

    def __init__(self, failed: list[str], report: object | None = None) -> None:
        self.failed = failed
        self.report = report
        super().__init__(
            operation="rollout",
            message=f"{len(failed)} service(s) failed: {', '.join(failed)}",
        )


class DockerNotAvailableError(DeployError):
    """The local Docker daemon cannot be reached."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            operation=operation,
            message=(
                "Docker is not available. Ensure the Docker daemon is running "
                "or use the shell runtime."
            ),
        )


class HealthGateError(ConvoyError):
    """Exception raised when a service fails its post-deploy health gate.

    The primary failure is never replaced by a rollback failure; the rollback
    outcome is attached instead.

    Attributes:
        service: Service that failed the gate
        message: Last observed health failure
        rollback_attempted: Whether a rollback to the previous image was tried
        rollback_error: Error raised by the rollback, if it also failed
    """

    def __init__(
        self,
        service: str,
        message: str,
        rollback_attempted: bool = False,
        rollback_error: Exception | None = None,
    ) -> None:
        self.service = service
        self.message = message
        self.rollback_attempted = rollback_attempted
        self.rollback_error = rollback_error
        super().__init__(f"Healthcheck failed for service '{service}': {message}")


class ScriptError(ConvoyError):
    """Exception raised when a provisioning script cannot be read or fails.

    Attributes:
        script: Script name
        message: Error details
        server: Server the script was running on, if any
    """

    def __init__(self, script: str, message: str, server: str | None = None) -> None:
        self.script = script
        self.message = message
        self.server = server
        where = f" on '{server}'" if server else ""
        super().__init__(f"Script '{script}'{where} failed: {message}")


class StateError(ConvoyError):
    """Exception raised when the local state file cannot be read or written.

    Attributes:
        path: State file path
        message: Error details
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(message)


class RetryError(ConvoyError):
    """Base exception for failures surfaced by the retry engine.

    Attributes:
        operation: Label of the retried operation
        attempts: Number of attempts actually made
        last_error: The underlying error from the final attempt
    """

    def __init__(
        self, operation: str, attempts: int, last_error: Exception, message: str
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.message = message
        super().__init__(f"{message}: {last_error}")


class RetryExhaustedError(RetryError):
    """All attempts failed."""

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(
            operation,
            attempts,
            last_error,
            f"{operation} failed after {attempts} attempts",
        )


class NonRetryableError(RetryError):
    """The classifier stopped retrying after a permanent failure."""

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(
            operation,
            attempts,
            last_error,
            f"{operation} failed with non-retryable error on attempt {attempts}",
        )
