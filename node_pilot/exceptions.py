"""Custom exceptions for node pilot."""


class NodePilotError(Exception):
    """Base exception for all node pilot errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class TalosError(NodePilotError):
    """Exception raised when a talosctl call fails."""

    pass


class KubernetesError(NodePilotError):
    """Exception raised for Kubernetes API errors."""

    pass


class ValidationError(NodePilotError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(NodePilotError):
    """Exception raised for configuration errors."""

    pass


class ClusterUnreachableError(NodePilotError):
    """Raised when no configured address of a context answered."""

    pass


class PlanError(ValidationError):
    """Raised when an operation plan is invalid or used out of order."""

    pass


class PlanConflictError(PlanError):
    """Raised when a context already has a running plan."""

    pass


class QuorumRiskError(NodePilotError):
    """Raised when disrupting a node would break control-plane quorum."""

    pass


class PreCheckBlockedError(NodePilotError):
    """Raised when workload pre-checks block a node and no override was given."""

    pass


class StepFailureError(NodePilotError):
    """Raised when a cordon, drain, reboot or readiness step fails."""

    def __init__(self, step: str, message: str, details: str = None):
        self.step = step
        super().__init__(message, details)
