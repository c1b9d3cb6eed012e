"""Custom exceptions for the deployment host."""

from typing import Optional


class DeployHostError(Exception):
    """Base exception for all deployment host errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(DeployHostError):
    """Configuration error."""
    pass


class ScanError(DeployHostError):
    """Local target tree could not be read or hashed."""
    pass


class TransportError(DeployHostError):
    """Network, DNS or TLS failure talking to the control server."""
    pass


class RequestTimeout(TransportError):
    """Request timed out (for a long poll: no message arrived)."""
    pass


class DownloadError(TransportError):
    """Server answered a download request with something other than an archive."""
    pass


class AuthExpiredError(DeployHostError):
    """Session token invalid or expired (server redirected to login)."""
    pass


class AuthenticationError(DeployHostError):
    """Login failed; fatal for the intake loop."""
    pass


class ArchiveError(DeployHostError):
    """Archive is corrupt or contains an unsupported entry."""
    pass


class PathTraversalError(ArchiveError):
    """Entry resolves outside the destination root."""
    pass


class SymlinkEntryError(ArchiveError):
    """Entry is a symbolic link."""
    pass


class UnexpectedManifestState(DeployHostError):
    """Server-supplied deletions conflict with local synthesis."""
    pass


class FilesystemMutationError(DeployHostError):
    """A delete or rmdir in the target tree failed."""
    pass
