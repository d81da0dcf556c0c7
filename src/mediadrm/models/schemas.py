from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator


class KeyType(str, Enum):
    SIGNING = "SIGNING"
    CONTENT = "CONTENT"
    KEY_CONTROL = "KEY_CONTROL"
    OPERATOR_SESSION = "OPERATOR_SESSION"
    ENTITLEMENT = "ENTITLEMENT"
    OEM_CONTENT = "OEM_CONTENT"


class KeyExportFormat(str, Enum):
    KID_KEY = "kid:key"
    MP4DECRYPT = "mp4decrypt"
    JSON = "json"


class ContentKey(BaseModel):
    """A content key returned by a CDM"""

    kid: str = Field(..., description="Hex-encoded 16-byte key ID")
    key: str = Field(..., description="Hex-encoded 16-byte AES key")
    type: KeyType = Field(default=KeyType.CONTENT)
    security_level: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("kid", "key", mode="before")
    @classmethod
    def normalize_hex(cls, value: Any) -> Any:
        if isinstance(value, bytes):
            if len(value) != 16:
                raise ValueError(f"expected 16 bytes, got {len(value)}")
            return value.hex()
        if isinstance(value, str):
            value = value.replace("-", "").strip().lower()
            if len(value) != 32:
                raise ValueError(f"expected 32 hex characters, got {len(value)}")
            bytes.fromhex(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper().replace("-", "_")
        return value

    @property
    def key_bytes(self) -> bytes:
        return bytes.fromhex(self.key)


class DecryptRequest(BaseModel):
    url: HttpUrl = Field(..., description="URL of the encrypted media segment")
    init_url: Optional[HttpUrl] = Field(
        None, description="URL of the track's init segment (encryption parameters)"
    )
    key: Optional[str] = Field(
        None,
        description="Hex-encoded content key; looked up by the init segment's KID when omitted",
    )
    remove_protection_boxes: bool = Field(
        default=False,
        description="Rename senc/pssh/saiz/saio/... to 'free' in the output",
    )
    proxy: Optional[str] = Field(
        None,
        description="Proxy URL (e.g., http://proxy.example.com:8080 or socks5://proxy:1080)",
    )
    user_agent: Optional[str] = Field(None, description="Custom User-Agent header")


class DecryptResponse(BaseModel):
    success: bool
    data_size: Optional[int] = Field(default=None, description="Size of decrypted data in bytes")
    error: Optional[str] = None
    processing_time: float
    kid: Optional[str] = Field(default=None, description="Default KID of the track")
    scheme: Optional[str] = Field(default=None, description="Protection scheme applied")

    model_config = ConfigDict(extra="forbid")


class PsshBoxInfo(BaseModel):
    system_id: str
    system_name: Optional[str] = None
    version: int
    kid_list: List[str] = Field(default_factory=list)
    data_base64: str
    box_base64: str


class InitAnalyzeRequest(BaseModel):
    url: HttpUrl = Field(..., description="URL of the init segment")


class EncryptionInfoResponse(BaseModel):
    is_encrypted: bool
    scheme: Optional[str] = None
    scheme_version: Optional[int] = None
    default_kid: Optional[str] = None
    per_sample_iv_size: int = 0
    constant_iv: Optional[str] = Field(default=None, description="Hex-encoded constant IV")
    crypt_byte_block: int = 0
    skip_byte_block: int = 0
    original_format: Optional[str] = None
    pssh: List[PsshBoxInfo] = Field(default_factory=list)


class ManifestParseRequest(BaseModel):
    url: Optional[HttpUrl] = Field(None, description="Manifest URL, fetched when content is omitted")
    content: Optional[str] = Field(None, description="Raw manifest text")
    base_url: Optional[str] = Field(None, description="Base for relative URLs (defaults to url's directory)")


class ManifestPsshInfo(BaseModel):
    system_id: str
    pssh_base64: str
    source: str
    kid: Optional[str] = None


class ManifestParseResponse(BaseModel):
    type: str
    drm_type: Optional[str] = None
    pssh: List[ManifestPsshInfo] = Field(default_factory=list)
    manifest: Dict[str, Any] = Field(default_factory=dict)


class KeysRequest(BaseModel):
    pssh: str = Field(..., description="Base64 PSSH box (or raw Widevine init data)")
    license_url: HttpUrl = Field(..., description="License server URL")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers for the license request")


class KeysResponse(BaseModel):
    keys: List[ContentKey]
    formatted: str = Field(..., description="Keys in kid:key form, one per line")


class ChallengeAnalyzeRequest(BaseModel):
    challenge: str = Field(..., description="Base64 license challenge (SignedMessage)")


class LicenseAnalyzeRequest(BaseModel):
    license: str = Field(..., description="Base64 license response (SignedMessage)")


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime: float
    memory_usage: float
    active_tasks: int
    cdm_configured: bool
