"""Exceptions raised during certificate renewal."""


class CertificateError(RuntimeError):
    """Base class for certificate renewal failures."""


class ConfigValidationError(ValueError):
    """Invalid component selector or renewal configuration."""


class StagingError(CertificateError):
    """Staged or cached certificate material is missing or unusable."""


class ClusterAPIError(CertificateError):
    """A Kubernetes API call failed."""


class RenewalError(CertificateError):
    """A renewal step failed on a node."""

    def __init__(self, message: str, component: str = "", node: str = ""):
        super().__init__(message)
        self.component = component
        self.node = node


class CleanupError(CertificateError):
    """The backup workspace could not be removed."""
