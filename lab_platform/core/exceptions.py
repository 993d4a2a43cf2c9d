"""Custom exceptions for the Lab Platform Backend"""

from typing import Optional, Dict, Any
from datetime import datetime


class ErrorLayer:
    """Layer of the engine that produced an error"""
    ADMISSION = "admission"
    LIFECYCLE = "lifecycle"
    PROVISIONING = "provisioning"
    QUEUE = "queue"


class LabPlatformError(Exception):
    """
    Base class for all engine errors.

    Every error carries the layer that produced it so operators can tell a
    denied request ("admission") apart from one that was attempted and broke
    ("provisioning", "queue").
    """

    layer: str = ErrorLayer.PROVISIONING
    error_code: str = "lab_platform_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize LabPlatformError.

        Args:
            message: Human-readable error message
            details: Additional error details for debugging
        """
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.utcnow()

        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for logging.

        Returns:
            Dictionary representation of the error
        """
        return {
            "error_type": self.error_code,
            "layer": self.layer,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }

    def get_api_response(self) -> Dict[str, Any]:
        """
        Get API-friendly error response.

        Returns:
            Dictionary suitable for HTTP error responses
        """
        return {
            "detail": self.message,
            "type": self.error_code,
            "layer": self.layer,
            "details": self.details
        }


class QuotaExceeded(LabPlatformError):
    """
    Raised when admission is rejected against the requester's quota.

    No usage counter or container row has been touched; the caller may retry
    later or ask for less.
    """

    layer = ErrorLayer.ADMISSION
    error_code = "quota_exceeded"
    status_code = 429

    def __init__(
        self,
        user_id: int,
        exceeded_resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.user_id = user_id
        self.exceeded_resource = exceeded_resource

        message = f"Quota exceeded for user {user_id}"
        if exceeded_resource:
            message = f"{message}: {exceeded_resource} limit reached"

        super().__init__(message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["user_id"] = self.user_id
        result["exceeded_resource"] = self.exceeded_resource
        return result


class LockTimeout(LabPlatformError):
    """Raised when the reservation lock could not be acquired within the bound."""

    layer = ErrorLayer.ADMISSION
    error_code = "lock_timeout"
    status_code = 503
    retryable = True

    def __init__(self, lock_key: int, timeout: float):
        self.lock_key = lock_key
        self.timeout = timeout

        super().__init__(
            f"Could not acquire reservation lock {lock_key} within {timeout}s",
            details={"lock_key": lock_key, "timeout_seconds": timeout}
        )


class InvalidTransition(LabPlatformError):
    """
    Raised when a container status change is not in the transition table.

    This is a programming or data error; it is surfaced and never retried.
    """

    layer = ErrorLayer.LIFECYCLE
    error_code = "invalid_transition"
    status_code = 409

    def __init__(self, container_id: int, old_status: str, new_status: str):
        self.container_id = container_id
        self.old_status = old_status
        self.new_status = new_status

        super().__init__(
            f"Invalid container status transition from {old_status} to {new_status}",
            details={
                "container_id": container_id,
                "old_status": old_status,
                "new_status": new_status
            }
        )


class ContainerNotFound(LabPlatformError):
    """Raised when a container or queue entry lookup misses"""

    layer = ErrorLayer.LIFECYCLE
    error_code = "not_found"
    status_code = 404


class ProvisioningError(LabPlatformError):
    """
    Base class for failures after admission.

    By the time one of these reaches the caller the container has been left
    in a terminal-observable state.
    """

    layer = ErrorLayer.PROVISIONING
    error_code = "provisioning_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        container_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.container_name = container_name
        details = dict(details or {})
        if container_name:
            details.setdefault("container_name", container_name)
        super().__init__(message, details=details)


class LaunchFailure(ProvisioningError):
    """Raised when the container runtime fails to create the instance"""

    error_code = "launch_failure"
    retryable = True


class ProvisioningTimeout(ProvisioningError):
    """Raised when no global address is observed within the readiness window"""

    error_code = "provisioning_timeout"
    status_code = 504
    retryable = True


class ProvisioningCancelled(ProvisioningError):
    """Raised after a cancelled provision has torn down its partial instance"""

    error_code = "provisioning_cancelled"
    status_code = 499


class RuntimeCommandError(ProvisioningError):
    """Raised when a runtime command (start/stop/snapshot/delete/exec) fails"""

    error_code = "runtime_command_failed"
    retryable = True


class OperationRetryExhausted(ProvisioningError):
    """Raised when a queue entry failed beyond the retry ceiling"""

    layer = ErrorLayer.QUEUE
    error_code = "operation_retry_exhausted"

    def __init__(
        self,
        entry_id: int,
        operation: str,
        attempts: int,
        last_error: Optional[str] = None
    ):
        self.entry_id = entry_id
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

        super().__init__(
            f"Operation {operation} (entry {entry_id}) failed after {attempts} attempts",
            details={
                "entry_id": entry_id,
                "operation": operation,
                "attempts": attempts,
                "last_error": last_error
            }
        )


class ContainerNameConflict(LabPlatformError):
    """Raised when an admitted container's name is already taken"""

    layer = ErrorLayer.ADMISSION
    error_code = "container_name_conflict"
    status_code = 409

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Container name {name} is already in use",
            details={"name": name}
        )


class ContainerNotReady(LabPlatformError):
    """Raised when a running container is required but the container is in another state"""

    layer = ErrorLayer.LIFECYCLE
    error_code = "container_not_ready"
    status_code = 409

    def __init__(self, container_id: int, status: str):
        self.container_id = container_id
        self.status = status
        super().__init__(
            f"Container {container_id} is {status}, not running",
            details={"container_id": container_id, "status": status}
        )
