from typing import Optional


class MediaDrmError(Exception):
    """Base class for all errors raised by mediadrm"""


class MalformedBox(MediaDrmError):
    """Truncated or invalid ISO-BMFF box header"""


class MissingEncryptionInfo(MediaDrmError):
    """No tenc/senc/constant IV could be resolved for a sample"""


class ProtobufDecodeError(MediaDrmError):
    """Unknown wire type or truncated protobuf field"""


class ManifestParseError(MediaDrmError):
    """Malformed DASH/HLS/MSS manifest"""


class CipherError(MediaDrmError):
    """The cipher provider failed to decrypt a block or sample"""


class CdmError(MediaDrmError):
    """Base class for Remote CDM failures"""


class CdmApiError(CdmError):
    """Non-2xx HTTP response from the remote CDM"""

    def __init__(self, status: int, body: str, message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"CDM API error {status}: {body[:200]}")


class LicenseServerError(CdmApiError):
    """Non-2xx HTTP response from the content's license server"""

    def __init__(self, status: int, body: str):
        super().__init__(status, body, f"License server {status}: {body[:200]}")


class CdmProtocolError(CdmError):
    """Remote CDM answered with an unexpected response shape"""

    def __init__(self, message: str, body: str = ""):
        self.body = body[:200]
        super().__init__(f"{message}: {self.body}" if self.body else message)


class CdmSessionError(CdmError):
    """Operation attempted in the wrong CDM session state"""


class CdmCancelledError(CdmError):
    """Key extraction was cancelled by the caller"""


class DownloadError(MediaDrmError):
    """A segment, init segment or manifest could not be fetched"""
