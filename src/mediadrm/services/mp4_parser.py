import base64
import binascii
import logging
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

Buffer = Union[bytes, bytearray, memoryview]

# Deepest nesting we follow: moov/trak/mdia/minf/stbl/stsd/encv/sinf/schi/tenc is 10
MAX_DEPTH = 16

# Boxes whose payload is a plain sequence of child boxes
CONTAINER_BOXES = {
    "moov",
    "trak",
    "mdia",
    "minf",
    "stbl",
    "moof",
    "traf",
    "mvex",
    "mfra",
    "sinf",
    "schi",
    "dinf",
    "edts",
    "udta",
}

# Full boxes with a fixed prefix before their children (version/flags + entry_count)
PREFIXED_CONTAINERS = {"stsd": 8}

# Sample entries: offset of the first child from the box start (box header,
# reserved(6) + data_reference_index(2), then the visual or audio fields)
SAMPLE_ENTRY_HEADER_SIZES = {
    "encv": 86,
    "avc1": 86,
    "avc3": 86,
    "hev1": 86,
    "hvc1": 86,
    "mp4v": 86,
    "vp09": 86,
    "av01": 86,
    "enca": 36,
    "mp4a": 36,
    "ac-3": 36,
    "ec-3": 36,
    "ac-4": 36,
    "opus": 36,
    "fLaC": 36,
    "encs": 16,
    "enct": 16,
    "wvtt": 16,
    "stpp": 16,
}

# Boxes renamed to 'free' when a segment is made clear
PROTECTION_BOXES = {"pssh", "senc", "sinf", "saiz", "saio", "sbgp", "sgpd"}

WIDEVINE_SYSTEM_ID = "edef8ba979d64acea3c827dcd51d21ed"
PLAYREADY_SYSTEM_ID = "9a04f07998404286ab92e65be0885f95"
CLEARKEY_SYSTEM_ID = "1077efecc0b24d02ace33c1e52e2fb4b"
FAIRPLAY_SYSTEM_ID = "94ce86fb07ff4f43adb893d2fa968ca2"

SYSTEM_NAMES = {
    WIDEVINE_SYSTEM_ID: "Widevine",
    PLAYREADY_SYSTEM_ID: "PlayReady",
    CLEARKEY_SYSTEM_ID: "ClearKey",
    FAIRPLAY_SYSTEM_ID: "FairPlay",
}


@dataclass(frozen=True)
class BoxHeader:
    """Decoded box header"""

    type: str
    offset: int
    size: int
    header_size: int

    @property
    def data_offset(self) -> int:
        return self.offset + self.header_size

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class Box:
    """A box located inside a buffer. Offsets are absolute within that buffer."""

    type: str
    offset: int
    size: int
    header_size: int
    payload: memoryview = field(repr=False)

    @property
    def data_offset(self) -> int:
        return self.offset + self.header_size

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass
class PsshEntry:
    """Protection System Specific Header"""

    system_id: str
    version: int
    kid_list: List[str]
    data: bytes
    full_box: bytes

    @property
    def full_box_base64(self) -> str:
        return base64.b64encode(self.full_box).decode("ascii")

    @property
    def system_name(self) -> Optional[str]:
        return system_id_name(self.system_id)


@dataclass
class TencInfo:
    version: int
    crypt_byte_block: int
    skip_byte_block: int
    is_protected: int
    per_sample_iv_size: int
    default_kid: str
    constant_iv: Optional[bytes] = None


@dataclass
class SchemeType:
    scheme_type: str
    scheme_version: int


@dataclass
class SubsampleEntry:
    clear_bytes: int
    protected_bytes: int


@dataclass
class SampleEncryptionEntry:
    iv: bytes
    subsamples: List[SubsampleEntry] = field(default_factory=list)


@dataclass
class SampleEncryption:
    sample_count: int
    has_subsamples: bool
    samples: List[SampleEncryptionEntry] = field(default_factory=list)


@dataclass
class TfhdInfo:
    track_id: int
    base_data_offset: Optional[int] = None
    sample_description_index: Optional[int] = None
    default_sample_duration: Optional[int] = None
    default_sample_size: Optional[int] = None
    default_sample_flags: Optional[int] = None


@dataclass
class TrunSample:
    duration: Optional[int] = None
    size: Optional[int] = None
    flags: Optional[int] = None
    composition_offset: Optional[int] = None


@dataclass
class EncryptionInfo:
    """Encryption parameters of one init segment"""

    is_encrypted: bool
    scheme: Optional[str] = None
    scheme_version: Optional[int] = None
    default_kid: Optional[str] = None
    per_sample_iv_size: int = 0
    constant_iv: Optional[bytes] = None
    crypt_byte_block: int = 0
    skip_byte_block: int = 0
    pssh_list: List[PsshEntry] = field(default_factory=list)
    original_format: Optional[str] = None

    @property
    def effective_scheme(self) -> str:
        """Scheme used for decryption; a missing schm means cenc"""
        return self.scheme or "cenc"


def system_id_name(system_id: str) -> Optional[str]:
    """Human readable DRM system name for a hex or dashed UUID system id"""
    return SYSTEM_NAMES.get(system_id.replace("-", "").lower())


# ─── Box Reading ────────────────────────────────────────────────────


def read_box_header(buffer: Buffer, offset: int, end: Optional[int] = None) -> Optional[BoxHeader]:
    """
    Read the box header at offset.

    Returns None when the header is truncated or invalid, which callers treat
    as the end of the box sequence.
    """
    limit = len(buffer) if end is None else end
    if offset + 8 > limit:
        return None

    size, type_bytes = struct.unpack_from(">I4s", buffer, offset)
    box_type = bytes(type_bytes).decode("latin-1")
    header_size = 8

    if size == 1:
        # 64-bit largesize follows the type
        if offset + 16 > limit:
            return None
        size = struct.unpack_from(">Q", buffer, offset + 8)[0]
        header_size = 16
    elif size == 0:
        size = limit - offset

    if size < header_size:
        return None

    return BoxHeader(type=box_type, offset=offset, size=size, header_size=header_size)


def iter_boxes(
    buffer: Buffer, start: int = 0, end: Optional[int] = None, debug: bool = False
) -> Iterator[Box]:
    """Yield sibling boxes between start and end, stopping at the first malformed one"""
    view = memoryview(buffer)
    limit = len(buffer) if end is None else min(end, len(buffer))
    offset = start

    while offset < limit:
        header = read_box_header(view, offset, limit)
        if header is None:
            if debug:
                logger.debug(f"Stopping box iteration at offset {offset}: malformed header")
            return
        if header.end > limit:
            if debug:
                logger.warning(
                    f"Box {header.type} extends beyond data: {header.end} > {limit}"
                )
            return

        yield Box(
            type=header.type,
            offset=header.offset,
            size=header.size,
            header_size=header.header_size,
            payload=view[header.data_offset : header.end],
        )
        offset = header.end


def children_start(box: Box) -> Optional[int]:
    """Absolute offset of the first child box, or None for leaf boxes"""
    if box.type in CONTAINER_BOXES:
        return box.data_offset
    if box.type in PREFIXED_CONTAINERS:
        return box.data_offset + PREFIXED_CONTAINERS[box.type]
    if box.type in SAMPLE_ENTRY_HEADER_SIZES:
        return box.offset + SAMPLE_ENTRY_HEADER_SIZES[box.type]
    return None


def walk_boxes(
    buffer: Buffer,
    start: int = 0,
    end: Optional[int] = None,
    depth: int = 0,
    debug: bool = False,
) -> Iterator[Box]:
    """Pre-order walk of the box tree, recursing only into known containers"""
    for box in iter_boxes(buffer, start, end, debug):
        yield box
        child_offset = children_start(box)
        if child_offset is None or child_offset >= box.end:
            continue
        if depth + 1 >= MAX_DEPTH:
            if debug:
                logger.warning(f"Box nesting deeper than {MAX_DEPTH} at {box.type}, not descending")
            continue
        yield from walk_boxes(buffer, child_offset, box.end, depth + 1, debug)


def find_box(
    buffer: Buffer, box_type: str, start: int = 0, end: Optional[int] = None
) -> Optional[Box]:
    """First sibling box of the given type"""
    for box in iter_boxes(buffer, start, end):
        if box.type == box_type:
            return box
    return None


def find_boxes_deep(
    buffer: Buffer, box_type: str, start: int = 0, end: Optional[int] = None
) -> List[Box]:
    """All boxes of the given type anywhere in the tree"""
    return [box for box in walk_boxes(buffer, start, end) if box.type == box_type]


def _first_deep(
    buffer: Buffer, box_type: str, start: int = 0, end: Optional[int] = None
) -> Optional[Box]:
    for box in walk_boxes(buffer, start, end):
        if box.type == box_type:
            return box
    return None


# ─── Protection boxes ───────────────────────────────────────────────


def extract_pssh(init_segment: Buffer, debug: bool = False) -> List[PsshEntry]:
    """Extract all PSSH boxes, keeping the exact original box bytes"""
    results: List[PsshEntry] = []

    for box in find_boxes_deep(init_segment, "pssh"):
        data = box.payload
        if len(data) < 24:
            if debug:
                logger.debug(f"PSSH box at {box.offset} too small: {len(data)} bytes")
            continue

        version = data[0]
        system_id = bytes(data[4:20]).hex()
        offset = 20
        kid_list: List[str] = []

        if version > 0:
            kid_count = struct.unpack_from(">I", data, offset)[0]
            offset += 4
            if offset + kid_count * 16 + 4 > len(data):
                if debug:
                    logger.debug(f"PSSH v1 KID list overruns box: {kid_count} KIDs")
                continue
            for _ in range(kid_count):
                kid_list.append(bytes(data[offset : offset + 16]).hex())
                offset += 16

        data_size = struct.unpack_from(">I", data, offset)[0]
        offset += 4
        pssh_data = bytes(data[offset : offset + data_size])

        entry = PsshEntry(
            system_id=system_id,
            version=version,
            kid_list=kid_list,
            data=pssh_data,
            full_box=bytes(init_segment[box.offset : box.end]),
        )
        results.append(entry)

        if debug:
            logger.debug(
                f"PSSH: system={entry.system_name or system_id}, version={version}, "
                f"kids={len(kid_list)}, data={len(pssh_data)} bytes"
            )

    return results


def parse_tenc(init_segment: Buffer) -> Optional[TencInfo]:
    """
    Parse the first Track Encryption (tenc) box.

    Layout after version/flags: reserved(1), crypt/skip nibbles (1, v1+),
    isProtected(1), perSampleIVSize(1), defaultKID(16) and, only when the IV
    size is 0, constantIVSize(1) + constantIV.
    """
    box = _first_deep(init_segment, "tenc")
    if box is None:
        return None

    data = box.payload
    if len(data) < 24:
        logger.warning(f"TENC box too small: {len(data)} bytes")
        return None

    version = data[0]
    crypt_byte_block = 0
    skip_byte_block = 0
    if version >= 1:
        crypt_byte_block = (data[5] >> 4) & 0x0F
        skip_byte_block = data[5] & 0x0F

    is_protected = data[6]
    per_sample_iv_size = data[7]
    default_kid = binascii.hexlify(data[8:24]).decode()

    constant_iv = None
    if per_sample_iv_size == 0 and len(data) > 24:
        constant_iv_size = data[24]
        constant_iv = bytes(data[25 : 25 + constant_iv_size])

    return TencInfo(
        version=version,
        crypt_byte_block=crypt_byte_block,
        skip_byte_block=skip_byte_block,
        is_protected=is_protected,
        per_sample_iv_size=per_sample_iv_size,
        default_kid=default_kid,
        constant_iv=constant_iv,
    )


def parse_scheme_type(init_segment: Buffer) -> Optional[SchemeType]:
    """Parse Scheme Type (schm) box"""
    box = _first_deep(init_segment, "schm")
    if box is None or len(box.payload) < 12:
        return None

    scheme_type = bytes(box.payload[4:8]).decode("ascii", errors="replace")
    scheme_version = struct.unpack_from(">I", box.payload, 8)[0]
    return SchemeType(scheme_type=scheme_type, scheme_version=scheme_version)


def parse_frma(init_segment: Buffer) -> Optional[str]:
    """Original sample entry format from the frma box"""
    box = _first_deep(init_segment, "frma")
    if box is None or len(box.payload) < 4:
        return None
    return bytes(box.payload[:4]).decode("latin-1")


def parse_senc(
    segment: Buffer,
    per_sample_iv_size: int,
    start: int = 0,
    end: Optional[int] = None,
    debug: bool = False,
) -> Optional[SampleEncryption]:
    """
    Parse the Sample Encryption (senc) box.

    Args:
        segment: Media segment (moof + mdat)
        per_sample_iv_size: IV size from tenc (0, 8 or 16)
        start: Offset to start searching from
        end: Offset to stop searching at

    Returns:
        SampleEncryption, possibly with fewer samples than declared when the
        box is truncated, or None when there is no usable senc box
    """
    box = _first_deep(segment, "senc", start, end)
    if box is None:
        return None

    data = box.payload
    if len(data) < 8:
        return None

    flags = struct.unpack_from(">I", data, 0)[0] & 0xFFFFFF
    has_subsamples = bool(flags & 0x02)
    sample_count = struct.unpack_from(">I", data, 4)[0]

    if debug:
        logger.debug(f"SENC: flags={flags:#x}, samples={sample_count}, iv_size={per_sample_iv_size}")

    offset = 8
    samples: List[SampleEncryptionEntry] = []
    for i in range(sample_count):
        if offset + per_sample_iv_size > len(data):
            if debug:
                logger.debug(f"SENC truncated at sample {i}")
            break
        entry = SampleEncryptionEntry(iv=bytes(data[offset : offset + per_sample_iv_size]))
        offset += per_sample_iv_size

        if has_subsamples:
            if offset + 2 > len(data):
                break
            subsample_count = struct.unpack_from(">H", data, offset)[0]
            offset += 2
            for _ in range(subsample_count):
                if offset + 6 > len(data):
                    break
                clear, protected = struct.unpack_from(">HI", data, offset)
                offset += 6
                entry.subsamples.append(SubsampleEntry(clear_bytes=clear, protected_bytes=protected))

        samples.append(entry)

    return SampleEncryption(sample_count=sample_count, has_subsamples=has_subsamples, samples=samples)


def _parse_tfhd_box(box: Box) -> Optional[TfhdInfo]:
    data = box.payload
    if len(data) < 8:
        return None

    flags = struct.unpack_from(">I", data, 0)[0] & 0xFFFFFF
    info = TfhdInfo(track_id=struct.unpack_from(">I", data, 4)[0])
    offset = 8

    try:
        if flags & 0x000001:  # base-data-offset-present
            info.base_data_offset = struct.unpack_from(">Q", data, offset)[0]
            offset += 8
        if flags & 0x000002:  # sample-description-index-present
            info.sample_description_index = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if flags & 0x000008:  # default-sample-duration-present
            info.default_sample_duration = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if flags & 0x000010:  # default-sample-size-present
            info.default_sample_size = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if flags & 0x000020:  # default-sample-flags-present
            info.default_sample_flags = struct.unpack_from(">I", data, offset)[0]
    except struct.error:
        logger.debug(f"TFHD truncated at offset {offset}")

    return info


def parse_tfhd(segment: Buffer, start: int = 0, end: Optional[int] = None) -> Optional[TfhdInfo]:
    """Parse Track Fragment Header (tfhd) box"""
    box = _first_deep(segment, "tfhd", start, end)
    return _parse_tfhd_box(box) if box is not None else None


def _parse_trun_box(box: Box, default_sample_size: Optional[int] = None) -> List[TrunSample]:
    data = box.payload
    if len(data) < 8:
        return []

    version_flags = struct.unpack_from(">I", data, 0)[0]
    version = (version_flags >> 24) & 0xFF
    flags = version_flags & 0xFFFFFF
    sample_count = struct.unpack_from(">I", data, 4)[0]

    offset = 8
    if flags & 0x000001:  # data-offset-present
        offset += 4
    if flags & 0x000004:  # first-sample-flags-present
        offset += 4

    # Field order is fixed: duration, size, flags, composition offset
    has_duration = bool(flags & 0x000100)
    has_size = bool(flags & 0x000200)
    has_flags = bool(flags & 0x000400)
    has_composition = bool(flags & 0x000800)
    entry_size = 4 * (has_duration + has_size + has_flags + has_composition)

    samples: List[TrunSample] = []
    for _ in range(sample_count):
        if offset + entry_size > len(data):
            break
        sample = TrunSample()
        if has_duration:
            sample.duration = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if has_size:
            sample.size = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if has_flags:
            sample.flags = struct.unpack_from(">I", data, offset)[0]
            offset += 4
        if has_composition:
            fmt = ">I" if version == 0 else ">i"
            sample.composition_offset = struct.unpack_from(fmt, data, offset)[0]
            offset += 4
        if sample.size is None:
            sample.size = default_sample_size
        samples.append(sample)

    return samples


def parse_trun(segment: Buffer, start: int = 0, end: Optional[int] = None) -> List[TrunSample]:
    """
    Per-sample entries of the first track fragment's trun box(es).

    Samples without an explicit size inherit the tfhd default sample size.
    """
    traf = _first_deep(segment, "traf", start, end)
    if traf is None:
        trun = _first_deep(segment, "trun", start, end)
        return _parse_trun_box(trun) if trun is not None else []

    tfhd_box = find_box(segment, "tfhd", traf.data_offset, traf.end)
    tfhd = _parse_tfhd_box(tfhd_box) if tfhd_box is not None else None
    default_size = tfhd.default_sample_size if tfhd else None

    samples: List[TrunSample] = []
    for box in iter_boxes(segment, traf.data_offset, traf.end):
        if box.type == "trun":
            samples.extend(_parse_trun_box(box, default_size))
    return samples


# ─── Encryption Analysis ────────────────────────────────────────────


def analyze_encryption(init_segment: Buffer, debug: bool = False) -> EncryptionInfo:
    """Collect everything needed to decrypt the segments of one track"""
    pssh_list = extract_pssh(init_segment, debug)
    tenc = parse_tenc(init_segment)
    scheme = parse_scheme_type(init_segment)

    is_encrypted = tenc.is_protected == 1 if tenc else len(pssh_list) > 0

    info = EncryptionInfo(
        is_encrypted=is_encrypted,
        scheme=scheme.scheme_type if scheme else None,
        scheme_version=scheme.scheme_version if scheme else None,
        default_kid=tenc.default_kid if tenc else None,
        per_sample_iv_size=tenc.per_sample_iv_size if tenc else 0,
        constant_iv=tenc.constant_iv if tenc else None,
        crypt_byte_block=tenc.crypt_byte_block if tenc else 0,
        skip_byte_block=tenc.skip_byte_block if tenc else 0,
        pssh_list=pssh_list,
        original_format=parse_frma(init_segment),
    )

    if debug:
        logger.debug(
            f"Encryption: encrypted={info.is_encrypted}, scheme={info.scheme}, "
            f"kid={info.default_kid}, iv_size={info.per_sample_iv_size}, "
            f"pattern={info.crypt_byte_block}:{info.skip_byte_block}, pssh={len(pssh_list)}"
        )

    return info


def _write_box_type(data: bytearray, box_start: int, new_type: str):
    data[box_start + 4 : box_start + 8] = new_type.encode("latin-1")


def strip_protection_boxes(buffer: Buffer, debug: bool = False) -> bytearray:
    """
    Copy of an init or media segment with its protection signalling removed.

    encv/enca entries get their frma original format back and protection
    boxes become 'free'. Box sizes are untouched so every offset stays valid.
    """
    out = bytearray(buffer)

    for box in walk_boxes(buffer, debug=debug):
        if box.type in ("encv", "enca"):
            frma = _first_deep(buffer, "frma", box.offset + SAMPLE_ENTRY_HEADER_SIZES[box.type], box.end)
            if frma is not None and len(frma.payload) >= 4:
                original = bytes(frma.payload[:4]).decode("latin-1")
                _write_box_type(out, box.offset, original)
                if debug:
                    logger.debug(f"Replaced {box.type} at {box.offset} with '{original}'")
        elif box.type in PROTECTION_BOXES:
            _write_box_type(out, box.offset, "free")
            if debug:
                logger.debug(f"Replaced {box.type} at {box.offset} with 'free'")

    return out
