"""Custom exceptions for SimpleDeploy."""

from typing import Optional


class SimpleDeployError(Exception):
    """Base exception for all agent errors."""

    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(SimpleDeployError):
    """Configuration error."""
    pass


# Intake errors, raised synchronously before a job is queued

class AuthenticationError(SimpleDeployError):
    """Authentication failed."""

    status_code = 401


class DeploymentNotAllowedError(SimpleDeployError):
    """Deployment name is not in the allow-list."""

    status_code = 400


class DeploymentTooLargeError(SimpleDeployError):
    """Artifacts exceed the maximum deployment size."""

    status_code = 413


class DuplicateJobError(SimpleDeployError):
    """A job with the same id is already tracked."""

    status_code = 409


class QueueClosedError(SimpleDeployError):
    """The queue no longer accepts work."""

    status_code = 503


class JobNotFoundError(SimpleDeployError):
    """Job not found (never queued or already reaped)."""

    status_code = 404


class InvalidJobTransitionError(SimpleDeployError):
    """A job record was moved out of order."""
    pass


# Fatal-to-job errors, raised inside the pipeline and caught at its boundary

class DeploymentAbortedError(SimpleDeployError):
    """A pipeline stage failed and the job must stop."""

    log_level = "error"

    def __init__(self, message: str, stage: str, code: Optional[str] = None):
        super().__init__(message, code)
        self.stage = stage


class InsufficientDiskSpaceError(DeploymentAbortedError):
    """Not enough free space on the working volume."""
    pass


class NoArtifactsError(DeploymentAbortedError):
    """The job carries no artifacts."""

    log_level = "warning"


class ArtifactExtractionError(DeploymentAbortedError):
    """An archive could not be extracted."""
    pass


class ScriptNotFoundError(DeploymentAbortedError):
    """No deployment script could be determined."""
    pass


class BackupError(DeploymentAbortedError):
    """Backup of the destination failed."""
    pass
