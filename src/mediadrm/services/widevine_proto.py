import base64
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from ..errors import ProtobufDecodeError
from .mp4_parser import WIDEVINE_SYSTEM_ID, find_box

logger = logging.getLogger(__name__)

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5

# Values are kept to 32 bits; bits past the 5th group are consumed but dropped
VARINT_MAX_SHIFT = 35

SIGNED_MESSAGE_TYPES = {
    1: "LICENSE_REQUEST",
    2: "LICENSE",
    3: "ERROR_RESPONSE",
    4: "SERVICE_CERTIFICATE_REQUEST",
    5: "SERVICE_CERTIFICATE",
    6: "SUB_LICENSE",
    7: "CAS_LICENSE_REQUEST",
    8: "CAS_LICENSE",
    9: "EXTERNAL_LICENSE_REQUEST",
    10: "EXTERNAL_LICENSE",
}

LICENSE_REQUEST_TYPES = {1: "NEW", 2: "RENEWAL", 3: "RELEASE"}

LICENSE_TYPES = {1: "STREAMING", 2: "OFFLINE", 3: "AUTOMATIC"}

PROTOCOL_VERSIONS = {20: "VERSION_2_0", 21: "VERSION_2_1", 22: "VERSION_2_2"}

KEY_SECURITY_LEVELS = {
    1: "SW_SECURE_CRYPTO",
    2: "SW_SECURE_DECODE",
    3: "HW_SECURE_CRYPTO",
    4: "HW_SECURE_DECODE",
    5: "HW_SECURE_ALL",
}

KEY_TYPES = {1: "SIGNING", 2: "CONTENT", 3: "KEY_CONTROL", 4: "OPERATOR_SESSION"}

PLATFORM_VERIFICATION_STATUS = {
    0: "PLATFORM_UNVERIFIED",
    1: "PLATFORM_TAMPERED",
    2: "PLATFORM_SOFTWARE_VERIFIED",
    3: "PLATFORM_HARDWARE_VERIFIED",
    4: "PLATFORM_NO_VERIFICATION",
    5: "PLATFORM_SECURE_STORAGE_SOFTWARE_VERIFIED",
}

HDCP_VERSIONS = {
    0: "HDCP_NONE",
    1: "HDCP_V1",
    2: "HDCP_V2",
    3: "HDCP_V2_1",
    4: "HDCP_V2_2",
    5: "HDCP_V2_3",
    255: "HDCP_NO_DIGITAL_OUTPUT",
}

TOKEN_TYPES = {
    0: "KEYBOX",
    1: "DRM_DEVICE_CERTIFICATE",
    2: "REMOTE_ATTESTATION_CERTIFICATE",
    3: "OEM_DEVICE_CERTIFICATE",
}

MESSAGE_TYPE_LICENSE = 2
KEY_TYPE_CONTENT = 2


@dataclass
class ProtoField:
    field_number: int
    wire_type: int
    data: Union[int, bytes]


# ─── Wire Format ────────────────────────────────────────────────────


def read_varint(buffer: bytes, offset: int) -> Tuple[int, int]:
    """
    Read a base-128 varint.

    Args:
        buffer: Encoded bytes
        offset: Position of the first varint byte

    Returns:
        (value, bytes_read). The value is limited to 32 bits; longer varints
        are consumed in full so the caller stays aligned.

    Raises:
        ProtobufDecodeError: Buffer ends before the final varint byte
    """
    result = 0
    shift = 0
    bytes_read = 0

    while offset < len(buffer):
        byte = buffer[offset]
        offset += 1
        bytes_read += 1

        if shift < VARINT_MAX_SHIFT:
            result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & 0xFFFFFFFF, bytes_read
        shift += 7

    raise ProtobufDecodeError(f"Truncated varint after {bytes_read} bytes")


def encode_varint(value: int) -> bytes:
    """Encode an unsigned integer as a base-128 varint"""
    if value < 0:
        raise ValueError("Negative varints are not supported")

    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_tag(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def encode_field(field_number: int, value: Union[int, bytes, str]) -> bytes:
    """Encode one field: ints as varints, bytes and str as length-delimited"""
    if isinstance(value, int):
        return encode_tag(field_number, WIRE_VARINT) + encode_varint(value)
    if isinstance(value, str):
        value = value.encode("utf-8")
    return encode_tag(field_number, WIRE_LENGTH_DELIMITED) + encode_varint(len(value)) + value


class ProtoFields(list):
    """Decoded fields; error is set when decoding stopped at a truncated field"""

    error: Optional[str] = None


def parse_fields(buffer: bytes) -> ProtoFields:
    """
    Decode all top-level fields of a protobuf message.

    Decoding stops at a zero field number, an unsupported wire type (groups
    included) or a field that runs past the end of the buffer. Whatever was
    decoded so far is returned; a truncated field is reported in ``error``.
    """
    fields = ProtoFields()
    offset = 0

    try:
        while offset < len(buffer):
            tag, n = read_varint(buffer, offset)
            offset += n

            field_number = tag >> 3
            wire_type = tag & 0x07
            if field_number == 0:
                break

            if wire_type == WIRE_VARINT:
                value, n = read_varint(buffer, offset)
                offset += n
                fields.append(ProtoField(field_number, wire_type, value))
            elif wire_type == WIRE_LENGTH_DELIMITED:
                length, n = read_varint(buffer, offset)
                offset += n
                if offset + length > len(buffer):
                    raise ProtobufDecodeError(
                        f"Field {field_number} declares {length} bytes, only {len(buffer) - offset} left"
                    )
                fields.append(ProtoField(field_number, wire_type, bytes(buffer[offset : offset + length])))
                offset += length
            elif wire_type in (WIRE_FIXED64, WIRE_FIXED32):
                width = 8 if wire_type == WIRE_FIXED64 else 4
                if offset + width > len(buffer):
                    raise ProtobufDecodeError(f"Truncated fixed{width * 8} field {field_number}")
                fields.append(ProtoField(field_number, wire_type, bytes(buffer[offset : offset + width])))
                offset += width
            else:
                logger.debug(f"Unsupported wire type {wire_type} for field {field_number}, stopping")
                break
    except ProtobufDecodeError as e:
        logger.debug(f"Stopped after {len(fields)} fields: {e}")
        fields.error = str(e)

    return fields


def _first_error(*parts) -> Optional[str]:
    """First decode error among parsed messages, None entries skipped"""
    for part in parts:
        if part is not None and part.error:
            return part.error
    return None


def _find(fields: List[ProtoField], field_number: int, wire_type: int) -> Optional[ProtoField]:
    for f in fields:
        if f.field_number == field_number and f.wire_type == wire_type:
            return f
    return None


def _text(data: Union[int, bytes]) -> Optional[str]:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return None


# ─── Widevine Messages ──────────────────────────────────────────────


@dataclass
class SignedMessage:
    type: Optional[int] = None
    msg: Optional[bytes] = None
    signature: Optional[bytes] = None
    session_key: Optional[bytes] = None
    remote_attestation: Optional[bytes] = None
    # 0=UNDEFINED, 1=WRAPPED_AES_KEY, 2=EPHEMERAL_ECC
    session_key_type: Optional[int] = None
    oemcrypto_core_message: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def type_name(self) -> Optional[str]:
        return SIGNED_MESSAGE_TYPES.get(self.type, "UNKNOWN") if self.type is not None else None


@dataclass
class NameValue:
    name: str
    value: str = ""


@dataclass
class ClientCapabilities:
    client_token: bool = False
    session_token: bool = False
    video_resolution_constraints: bool = False
    max_hdcp_version: Optional[int] = None
    oem_crypto_api_version: Optional[int] = None
    anti_rollback_usage_table: bool = False
    srm_version: Optional[int] = None
    resource_rating_tier: Optional[int] = None
    error: Optional[str] = None

    @property
    def max_hdcp_version_name(self) -> Optional[str]:
        return HDCP_VERSIONS.get(self.max_hdcp_version)


@dataclass
class ClientIdentification:
    """
    ClientIdentification from a license request.

    client_info carries the device's name/value pairs (company, model,
    architecture, build info) which identify the CDM that produced a challenge.
    """

    type: Optional[int] = None
    token: Optional[bytes] = None
    client_info: List[NameValue] = field(default_factory=list)
    provider_client_token: Optional[bytes] = None
    license_counter: Optional[int] = None
    client_capabilities: Optional[ClientCapabilities] = None
    vmp_data: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def type_name(self) -> str:
        return TOKEN_TYPES.get(self.type, "UNKNOWN")


@dataclass
class WidevinePsshData:
    pssh_data: List[bytes] = field(default_factory=list)
    license_type: Optional[int] = None
    content_id: Optional[bytes] = None
    key_ids: List[bytes] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ContentIdentification:
    widevine_pssh_data: Optional[WidevinePsshData] = None
    error: Optional[str] = None


@dataclass
class EncryptedClientId:
    provider_id: Optional[str] = None
    service_cert_serial_number: Optional[bytes] = None
    encrypted_client_id: Optional[bytes] = None
    encrypted_client_id_iv: Optional[bytes] = None
    encrypted_privacy_key: Optional[bytes] = None
    error: Optional[str] = None


@dataclass
class LicenseRequest:
    client_id: Optional[ClientIdentification] = None
    content_id: Optional[ContentIdentification] = None
    type: Optional[int] = None
    request_time: Optional[int] = None
    protocol_version: Optional[int] = None
    key_control_nonce: Optional[int] = None
    encrypted_client_id: Optional[EncryptedClientId] = None
    error: Optional[str] = None

    @property
    def type_name(self) -> Optional[str]:
        return LICENSE_REQUEST_TYPES.get(self.type, "UNKNOWN") if self.type is not None else None

    @property
    def protocol_version_name(self) -> Optional[str]:
        return PROTOCOL_VERSIONS.get(self.protocol_version)


@dataclass
class LicenseIdentification:
    request_id: Optional[bytes] = None
    session_id: Optional[bytes] = None
    purchase_id: Optional[bytes] = None
    type: Optional[int] = None
    version: Optional[int] = None
    provider_session_token: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def type_name(self) -> Optional[str]:
        return LICENSE_TYPES.get(self.type)


@dataclass
class KeyContainer:
    id: Optional[bytes] = None
    iv: Optional[bytes] = None
    # Wrapped with the session's derived encryption key
    key: Optional[bytes] = None
    type: Optional[int] = None
    security_level: Optional[int] = None
    error: Optional[str] = None

    @property
    def type_name(self) -> Optional[str]:
        return KEY_TYPES.get(self.type)

    @property
    def security_level_name(self) -> Optional[str]:
        return KEY_SECURITY_LEVELS.get(self.security_level)


@dataclass
class License:
    id: Optional[LicenseIdentification] = None
    policy: Optional[bytes] = None
    keys: List[KeyContainer] = field(default_factory=list)
    license_start_time: Optional[int] = None
    platform_verification_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def platform_verification_name(self) -> Optional[str]:
        if self.platform_verification_status is None:
            return None
        return PLATFORM_VERIFICATION_STATUS.get(self.platform_verification_status, "UNKNOWN")


def parse_signed_message(buffer: bytes) -> SignedMessage:
    message = SignedMessage()

    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1 and f.wire_type == WIRE_VARINT:
            message.type = f.data
        elif f.field_number == 2 and f.wire_type == WIRE_LENGTH_DELIMITED:
            message.msg = f.data
        elif f.field_number == 3:
            message.signature = f.data
        elif f.field_number == 4:
            message.session_key = f.data
        elif f.field_number == 5:
            message.remote_attestation = f.data
        elif f.field_number == 8:
            message.session_key_type = f.data
        elif f.field_number == 9:
            message.oemcrypto_core_message = f.data

    message.error = fields.error
    return message


def parse_license_request(buffer: bytes) -> LicenseRequest:
    request = LicenseRequest()

    fields = parse_fields(buffer)
    for f in fields:
        delimited = f.wire_type == WIRE_LENGTH_DELIMITED
        if f.field_number == 1 and delimited:
            request.client_id = parse_client_identification(f.data)
        elif f.field_number == 2 and delimited:
            request.content_id = parse_content_identification(f.data)
        elif f.field_number == 3:
            request.type = f.data
        elif f.field_number == 4:
            request.request_time = f.data
        elif f.field_number == 6:
            request.protocol_version = f.data
        elif f.field_number == 7:
            request.key_control_nonce = f.data
        elif f.field_number == 8 and delimited:
            request.encrypted_client_id = parse_encrypted_client_id(f.data)

    request.error = _first_error(fields, request.client_id, request.content_id, request.encrypted_client_id)
    return request


def parse_name_value(buffer: bytes) -> Optional[NameValue]:
    """ClientIdentification.NameValue; None when the name is missing"""
    name = value = None
    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1 and f.wire_type == WIRE_LENGTH_DELIMITED:
            name = _text(f.data)
        elif f.field_number == 2 and f.wire_type == WIRE_LENGTH_DELIMITED:
            value = _text(f.data)
    return NameValue(name=name, value=value or "") if name else None


def parse_client_identification(buffer: bytes) -> ClientIdentification:
    client_id = ClientIdentification()

    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1:
            client_id.type = f.data
        elif f.field_number == 2:
            client_id.token = f.data
        elif f.field_number == 3 and f.wire_type == WIRE_LENGTH_DELIMITED:
            pair = parse_name_value(f.data)
            if pair:
                client_id.client_info.append(pair)
        elif f.field_number == 4:
            client_id.provider_client_token = f.data
        elif f.field_number == 5:
            client_id.license_counter = f.data
        elif f.field_number == 6 and f.wire_type == WIRE_LENGTH_DELIMITED:
            client_id.client_capabilities = parse_client_capabilities(f.data)
        elif f.field_number == 7:
            client_id.vmp_data = f.data

    client_id.error = _first_error(fields, client_id.client_capabilities)
    return client_id


def parse_client_capabilities(buffer: bytes) -> ClientCapabilities:
    caps = ClientCapabilities()

    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1:
            caps.client_token = bool(f.data)
        elif f.field_number == 2:
            caps.session_token = bool(f.data)
        elif f.field_number == 3:
            caps.video_resolution_constraints = bool(f.data)
        elif f.field_number == 4:
            caps.max_hdcp_version = f.data
        elif f.field_number == 5:
            caps.oem_crypto_api_version = f.data
        elif f.field_number == 6:
            caps.anti_rollback_usage_table = bool(f.data)
        elif f.field_number == 7:
            caps.srm_version = f.data
        elif f.field_number == 12:
            caps.resource_rating_tier = f.data

    caps.error = fields.error
    return caps


def parse_content_identification(buffer: bytes) -> ContentIdentification:
    content_id = ContentIdentification()
    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1 and f.wire_type == WIRE_LENGTH_DELIMITED:
            content_id.widevine_pssh_data = parse_widevine_pssh_data(f.data)
    content_id.error = _first_error(fields, content_id.widevine_pssh_data)
    return content_id


def parse_widevine_pssh_data(buffer: bytes) -> WidevinePsshData:
    pssh = WidevinePsshData()

    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1 and f.wire_type == WIRE_LENGTH_DELIMITED:
            pssh.pssh_data.append(f.data)
        elif f.field_number == 2 and f.wire_type == WIRE_VARINT:
            pssh.license_type = f.data
        elif f.field_number == 3 and f.wire_type == WIRE_LENGTH_DELIMITED:
            pssh.content_id = f.data
        elif f.field_number == 4 and f.wire_type == WIRE_LENGTH_DELIMITED:
            pssh.key_ids.append(f.data)

    pssh.error = fields.error
    return pssh


def parse_encrypted_client_id(buffer: bytes) -> EncryptedClientId:
    encrypted = EncryptedClientId()

    fields = parse_fields(buffer)
    for f in fields:
        if f.field_number == 1 and f.wire_type == WIRE_LENGTH_DELIMITED:
            encrypted.provider_id = _text(f.data)
        elif f.field_number == 2:
            encrypted.service_cert_serial_number = f.data
        elif f.field_number == 3:
            encrypted.encrypted_client_id = f.data
        elif f.field_number == 4:
            encrypted.encrypted_client_id_iv = f.data
        elif f.field_number == 5:
            encrypted.encrypted_privacy_key = f.data

    encrypted.error = fields.error
    return encrypted


def parse_license_message(buffer: bytes) -> License:
    """Parse License: identification, raw policy and key containers"""
    license_msg = License()

    fields = parse_fields(buffer)
    for f in fields:
        if f.wire_type == WIRE_VARINT:
            if f.field_number == 4:
                license_msg.license_start_time = f.data
            elif f.field_number == 10:
                license_msg.platform_verification_status = f.data
            continue
        if f.wire_type != WIRE_LENGTH_DELIMITED:
            continue
        if f.field_number == 1:
            license_msg.id = parse_license_identification(f.data)
        elif f.field_number == 2:
            license_msg.policy = f.data
        elif f.field_number == 3:
            license_msg.keys.append(parse_key_container(f.data))

    license_msg.error = _first_error(fields, license_msg.id, *license_msg.keys)
    return license_msg


def parse_license_identification(buffer: bytes) -> LicenseIdentification:
    license_id = LicenseIdentification()

    fields = parse_fields(buffer)
    for f in fields:
        delimited = f.wire_type == WIRE_LENGTH_DELIMITED
        if f.field_number == 1 and delimited:
            license_id.request_id = f.data
        elif f.field_number == 2 and delimited:
            license_id.session_id = f.data
        elif f.field_number == 3 and delimited:
            license_id.purchase_id = f.data
        elif f.field_number == 4:
            license_id.type = f.data
        elif f.field_number == 5:
            license_id.version = f.data
        elif f.field_number == 6 and delimited:
            license_id.provider_session_token = f.data

    license_id.error = fields.error
    return license_id


def parse_key_container(buffer: bytes) -> KeyContainer:
    container = KeyContainer()

    fields = parse_fields(buffer)
    for f in fields:
        delimited = f.wire_type == WIRE_LENGTH_DELIMITED
        if f.field_number == 1 and delimited:
            container.id = f.data
        elif f.field_number == 2 and delimited:
            container.iv = f.data
        elif f.field_number == 3 and delimited:
            container.key = f.data
        elif f.field_number == 4:
            container.type = f.data
        elif f.field_number == 5:
            container.security_level = f.data

    container.error = fields.error
    return container


# ─── Extraction Helpers ─────────────────────────────────────────────


def extract_pssh_from_challenge(challenge: bytes) -> Optional[bytes]:
    """
    PSSH init data carried in a license challenge.

    Path: SignedMessage.msg(2) -> LicenseRequest.content_id(2) ->
    ContentId.widevine_pssh_data(1) -> WidevinePsshData.pssh_data(1)
    """
    path = [(2, "msg"), (2, "content_id"), (1, "widevine_pssh_data"), (1, "pssh_data")]
    data = challenge
    for field_number, name in path:
        fields = parse_fields(data)
        found = _find(fields, field_number, WIRE_LENGTH_DELIMITED)
        if found is None:
            if fields.error:
                logger.warning(f"Failed to extract PSSH from challenge: {fields.error}")
            else:
                logger.debug(f"Challenge has no {name} field")
            return None
        data = found.data
    return data


def get_message_type(signed_message: bytes) -> Optional[int]:
    found = _find(parse_fields(signed_message), 1, WIRE_VARINT)
    return found.data if found else None


def extract_request_id_from_license(license_message: bytes) -> Optional[bytes]:
    """LicenseIdentification.request_id of a license SignedMessage, used to pair it with its challenge"""
    signed = parse_signed_message(license_message)
    if signed.msg is None:
        return None
    license_id = parse_license_message(signed.msg).id
    return license_id.request_id if license_id else None


def pssh_data_to_pssh_box(pssh_data: bytes, system_id: str = WIDEVINE_SYSTEM_ID) -> bytes:
    """Wrap init data in a version 0 pssh box"""
    box_size = 8 + 4 + 16 + 4 + len(pssh_data)
    return (
        struct.pack(">I4sI", box_size, b"pssh", 0)
        + bytes.fromhex(system_id.replace("-", ""))
        + struct.pack(">I", len(pssh_data))
        + pssh_data
    )


def pssh_box_to_data(pssh_box: bytes) -> Optional[bytes]:
    """Init data of a pssh box, or None when the bytes are not a pssh box"""
    if len(pssh_box) < 32:
        return None

    box = find_box(pssh_box, "pssh")
    if box is None or box.offset != 0:
        return None

    data = box.payload
    version = data[0]
    offset = 20
    if version == 1:
        kid_count = struct.unpack_from(">I", data, offset)[0]
        offset += 4 + kid_count * 16

    if offset + 4 > len(data):
        return None
    data_size = struct.unpack_from(">I", data, offset)[0]
    offset += 4
    return bytes(data[offset : offset + data_size])


# ─── Diagnostics ────────────────────────────────────────────────────


@dataclass
class ClientInfoSummary:
    type: str
    info: List[NameValue]
    capabilities: Optional[ClientCapabilities] = None


@dataclass
class ChallengeAnalysis:
    message_type: Optional[str] = None
    protocol_version: Optional[str] = None
    request_type: Optional[str] = None
    request_time: Optional[int] = None
    has_encrypted_client_id: bool = False
    client_info: Optional[ClientInfoSummary] = None
    pssh_data: List[str] = field(default_factory=list)
    key_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class KeySummary:
    kid: Optional[str]
    type: Optional[str]
    security_level: Optional[str]
    has_iv: bool
    has_key: bool


@dataclass
class LicenseAnalysis:
    message_type: Optional[str] = None
    request_id: Optional[str] = None
    license_type: Optional[str] = None
    platform_verification: Optional[str] = None
    keys: List[KeySummary] = field(default_factory=list)
    content_keys: int = 0
    error: Optional[str] = None


def analyze_challenge(challenge: bytes) -> ChallengeAnalysis:
    """
    Structured dump of a license challenge.

    Never raises. A truncated message yields whatever was decoded before the
    truncation, with the reason in the error field.
    """
    signed = parse_signed_message(challenge)
    if signed.msg is None:
        return ChallengeAnalysis(message_type=signed.type_name, error=signed.error or "No msg field")

    request = parse_license_request(signed.msg)
    client_id = request.client_id
    content_id = request.content_id
    pssh = content_id.widevine_pssh_data if content_id else None

    error = _first_error(signed, request)
    if error:
        logger.debug(f"Challenge decoded partially: {error}")

    return ChallengeAnalysis(
        message_type=signed.type_name,
        protocol_version=request.protocol_version_name,
        request_type=request.type_name,
        request_time=request.request_time,
        has_encrypted_client_id=request.encrypted_client_id is not None,
        client_info=ClientInfoSummary(
            type=client_id.type_name,
            info=client_id.client_info,
            capabilities=client_id.client_capabilities,
        )
        if client_id
        else None,
        pssh_data=[base64.b64encode(d).decode("ascii") for d in pssh.pssh_data] if pssh else [],
        key_ids=[d.hex() for d in pssh.key_ids] if pssh else [],
        error=error,
    )


def analyze_license_response(response: bytes) -> LicenseAnalysis:
    """
    Structured dump of a license response.

    Never raises. Key containers decoded before a truncation are still
    reported, with the reason in the error field.
    """
    signed = parse_signed_message(response)
    if signed.msg is None:
        return LicenseAnalysis(message_type=signed.type_name, error=signed.error or "No msg field")
    if signed.type != MESSAGE_TYPE_LICENSE:
        return LicenseAnalysis(
            message_type=signed.type_name,
            error=f"Not a LICENSE message (type={signed.type})",
        )

    license_msg = parse_license_message(signed.msg)
    license_id = license_msg.id or LicenseIdentification()

    error = _first_error(signed, license_msg)
    if error:
        logger.debug(f"License decoded partially: {error}")

    return LicenseAnalysis(
        message_type=signed.type_name,
        request_id=base64.b64encode(license_id.request_id).decode("ascii")
        if license_id.request_id
        else None,
        license_type=license_id.type_name,
        platform_verification=license_msg.platform_verification_name,
        keys=[
            KeySummary(
                kid=k.id.hex() if k.id is not None else None,
                type=k.type_name,
                security_level=k.security_level_name,
                has_iv=bool(k.iv),
                has_key=bool(k.key),
            )
            for k in license_msg.keys
        ],
        content_keys=sum(1 for k in license_msg.keys if k.type == KEY_TYPE_CONTENT),
        error=error,
    )
