class LaunchpadError(Exception):
    """Base class of every failure the control plane reports to a caller."""

    status_code = 500


class ArchiveInvalid(LaunchpadError):
    status_code = 400


class ExtractionLimitExceeded(LaunchpadError):
    status_code = 413


class ExtractionBlocked(LaunchpadError):
    """A single archive entry refused by the extractor, never fatal."""

    status_code = 400


class ProjectNotFound(LaunchpadError):
    status_code = 422


class DependencyInstallFailed(LaunchpadError):
    status_code = 422


class BuildFailed(LaunchpadError):
    status_code = 422


class NoPortAvailable(LaunchpadError):
    status_code = 503


class PreviewStartFailed(LaunchpadError):
    status_code = 502


class PortInUse(PreviewStartFailed):
    """The reserved port was bound by someone else before the preview server."""

    def __init__(self, message: str, port: int):
        super().__init__(message)
        self.port = port


class DeploymentNotFound(LaunchpadError):
    status_code = 404


class Unauthorized(LaunchpadError):
    status_code = 403


class UploadTooLarge(LaunchpadError):
    status_code = 413
