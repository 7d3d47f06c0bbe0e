"""
Error Taxonomy

Every failure the store can surface derives from DistoreError. The CLI and
the HTTP API map each kind to its own message, exit code and status; the
`retried` flag on UploadFailed/DownloadFailed keeps "transient, already
retried" distinguishable from fatal configuration problems.

    DistoreError
    ├── ConfigError             bad chunk size, missing token/channel
    ├── TransportError          network/backend fault (retried)
    │   └── RateLimited         backend asked us to back off (retried)
    ├── PayloadTooLarge         attachment above backend limit
    ├── ManifestTooLarge        manifest cannot fit the backend limit
    ├── IntegrityError          hash mismatch on reassembly
    ├── NotFound                reference does not resolve
    │   └── ManifestNotFound
    ├── ManifestError
    │   ├── CorruptManifest
    │   └── UnsupportedVersion
    ├── UploadFailed            retry budget exhausted during upload
    └── DownloadFailed          retry budget exhausted during download
"""

from typing import Optional


class DistoreError(Exception):
    """Base exception for all store errors."""

    exit_code = 1
    label = "error"

    def __init__(self, message: str = ""):
        message = message or (self.__class__.__doc__ or "").strip()
        super().__init__(message)
        self.message = message


class ConfigError(DistoreError):
    """Invalid or missing configuration."""

    exit_code = 2
    label = "configuration error"


class TransportError(DistoreError):
    """Backend or network failure."""

    exit_code = 3
    label = "transport error"


class RateLimited(TransportError):
    """Backend signalled a rate limit."""

    label = "rate limited"

    def __init__(self, retry_after: float, message: str = ""):
        super().__init__(message or f"Rate limited, retry after {retry_after:.2f}s")
        self.retry_after = max(0.0, float(retry_after))


class PayloadTooLarge(DistoreError):
    """Payload exceeds the backend attachment limit."""

    exit_code = 4
    label = "payload too large"


class ManifestTooLarge(DistoreError):
    """Manifest would exceed the backend message size limit."""

    exit_code = 4
    label = "manifest too large"


class IntegrityError(DistoreError):
    """Reassembled data does not match the recorded hash."""

    exit_code = 5
    label = "integrity error"

    def __init__(self, message: str = "", index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class NotFound(DistoreError):
    """No such stored file."""

    exit_code = 6
    label = "not found"


class ManifestNotFound(NotFound):
    """No stored file exists for this reference."""


class ManifestError(DistoreError):
    """Manifest could not be decoded."""

    exit_code = 7
    label = "manifest error"


class CorruptManifest(ManifestError):
    """Manifest is malformed."""

    label = "corrupt manifest"


class UnsupportedVersion(ManifestError):
    """Manifest format version is newer than this reader supports."""

    label = "unsupported manifest version"

    def __init__(self, version, supported: int):
        super().__init__(
            f"Manifest format version {version} is not supported "
            f"(this reader understands up to {supported}); upgrade distore"
        )
        self.version = version
        self.supported = supported


class UploadFailed(DistoreError):
    """Upload did not complete."""

    exit_code = 8
    label = "upload failed"

    def __init__(self, message: str = "", retried: bool = False):
        super().__init__(message)
        self.retried = retried


class DownloadFailed(DistoreError):
    """Download did not complete."""

    exit_code = 8
    label = "download failed"

    def __init__(self, message: str = "", retried: bool = False):
        super().__init__(message)
        self.retried = retried
