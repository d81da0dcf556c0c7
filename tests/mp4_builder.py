"""Byte-level builders for synthetic ISO-BMFF fixtures and reference AES encryption"""

import struct
from typing import List, Optional, Sequence, Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

WIDEVINE = "edef8ba979d64acea3c827dcd51d21ed"
PLAYREADY = "9a04f07998404286ab92e65be0885f95"

KID = "0123456789abcdef0123456789abcdef"
KEY = "00112233445566778899aabbccddeeff"

Subsamples = Optional[Sequence[Tuple[int, int]]]


def box(box_type: str, payload: bytes = b"") -> bytes:
    return struct.pack(">I4s", 8 + len(payload), box_type.encode("latin-1")) + payload


def full_box(box_type: str, version: int, flags: int, payload: bytes = b"") -> bytes:
    return box(box_type, struct.pack(">I", (version << 24) | flags) + payload)


def large_box(box_type: str, payload: bytes = b"") -> bytes:
    """Box with a 64-bit largesize header"""
    return struct.pack(">I4sQ", 1, box_type.encode("latin-1"), 16 + len(payload)) + payload


def pssh_box(system_id: str = WIDEVINE, data: bytes = b"", kids: Optional[List[str]] = None) -> bytes:
    payload = bytes.fromhex(system_id)
    if kids is not None:
        payload += struct.pack(">I", len(kids)) + b"".join(bytes.fromhex(k) for k in kids)
    payload += struct.pack(">I", len(data)) + data
    return full_box("pssh", 1 if kids is not None else 0, 0, payload)


def tenc_box(
    kid: str = KID,
    iv_size: int = 8,
    constant_iv: Optional[bytes] = None,
    crypt: int = 0,
    skip: int = 0,
) -> bytes:
    version = 1 if (crypt or skip) else 0
    pattern = (crypt << 4) | skip if version else 0
    payload = struct.pack(">BBBB", 0, pattern, 1, iv_size) + bytes.fromhex(kid)
    if iv_size == 0 and constant_iv is not None:
        payload += struct.pack(">B", len(constant_iv)) + constant_iv
    return full_box("tenc", version, 0, payload)


def sinf_box(scheme: Optional[str], original_format: str, tenc: bytes) -> bytes:
    children = box("frma", original_format.encode("latin-1"))
    if scheme is not None:
        children += full_box("schm", 0, 0, scheme.encode("ascii") + struct.pack(">I", 0x10000))
    children += box("schi", tenc)
    return box("sinf", children)


def visual_sample_entry_fields(width: int = 1280, height: int = 720) -> bytes:
    """reserved + data_reference_index, then the VisualSampleEntry fields (78 bytes)"""
    compressor = b"\x0aAVC Coding".ljust(32, b"\x00")
    return (
        bytes(6)
        + struct.pack(">H", 1)
        + bytes(16)
        + struct.pack(">HHIII", width, height, 0x00480000, 0x00480000, 0)
        + struct.pack(">H", 1)
        + compressor
        + struct.pack(">Hh", 0x0018, -1)
    )


def audio_sample_entry_fields(channels: int = 2, sample_rate: int = 48000) -> bytes:
    """reserved + data_reference_index, then the AudioSampleEntry fields (28 bytes)"""
    return (
        bytes(6)
        + struct.pack(">H", 1)
        + bytes(8)
        + struct.pack(">HHHH", channels, 16, 0, 0)
        + struct.pack(">I", sample_rate << 16)
    )


def init_segment(
    kid: str = KID,
    scheme: Optional[str] = "cenc",
    iv_size: int = 8,
    constant_iv: Optional[bytes] = None,
    crypt: int = 0,
    skip: int = 0,
    pssh: Sequence[bytes] = (),
    original_format: str = "avc1",
    audio: bool = False,
) -> bytes:
    """ftyp + moov with one encrypted track (encv or enca sample entry)"""
    tenc = tenc_box(kid, iv_size, constant_iv, crypt, skip)
    sinf = sinf_box(scheme, original_format, tenc)
    if audio:
        entry = box("enca", audio_sample_entry_fields() + full_box("esds", 0, 0, b"\x03\x19\x00\x01\x00") + sinf)
    else:
        entry = box("encv", visual_sample_entry_fields() + box("avcC", b"\x01\x64\x00\x1f\xff\xe1") + sinf)

    stsd = full_box("stsd", 0, 0, struct.pack(">I", 1) + entry)
    stbl = box("stbl", stsd)
    minf = box("minf", stbl)
    mdia = box("mdia", minf)
    trak = box("trak", box("tkhd", bytes(84)) + mdia)
    moov = box("moov", box("mvhd", bytes(100)) + trak + b"".join(pssh))
    return box("ftyp", b"iso6\x00\x00\x00\x00iso6dash") + moov


def senc_box(entries: Sequence[Tuple[bytes, Subsamples]], with_subsamples: bool) -> bytes:
    payload = struct.pack(">I", len(entries))
    for iv, subsamples in entries:
        payload += iv
        if with_subsamples:
            subsamples = subsamples or []
            payload += struct.pack(">H", len(subsamples))
            for clear, protected in subsamples:
                payload += struct.pack(">HI", clear, protected)
    return full_box("senc", 0, 0x02 if with_subsamples else 0, payload)


def trun_box(sizes: Sequence[int]) -> bytes:
    payload = struct.pack(">Ii", len(sizes), 0)
    payload += b"".join(struct.pack(">I", size) for size in sizes)
    return full_box("trun", 0, 0x000201, payload)


def fragment(
    samples: Sequence[bytes],
    entries: Optional[Sequence[Tuple[bytes, Subsamples]]] = None,
    default_sample_size: Optional[int] = None,
) -> bytes:
    """moof (mfhd, traf(tfhd, trun, senc)) + mdat for the given samples"""
    if default_sample_size is not None:
        tfhd = full_box("tfhd", 0, 0x000010, struct.pack(">II", 1, default_sample_size))
        trun = full_box("trun", 0, 0, struct.pack(">I", len(samples)))
    else:
        tfhd = full_box("tfhd", 0, 0, struct.pack(">I", 1))
        trun = trun_box([len(s) for s in samples])

    traf_children = tfhd + trun
    if entries is not None:
        with_subsamples = any(sub for _, sub in entries)
        traf_children += senc_box(entries, with_subsamples)

    moof = box("moof", full_box("mfhd", 0, 0, struct.pack(">I", 1)) + box("traf", traf_children))
    return moof + box("mdat", b"".join(samples))


def media_segment(*fragments: bytes) -> bytes:
    return box("styp", b"msdh\x00\x00\x00\x00msdh") + b"".join(fragments)


def mdat_payloads(segment: bytes) -> List[bytes]:
    """Payloads of every top-level mdat, in order"""
    payloads = []
    offset = 0
    while offset + 8 <= len(segment):
        size, box_type = struct.unpack_from(">I4s", segment, offset)
        if box_type == b"mdat":
            payloads.append(segment[offset + 8 : offset + size])
        offset += size
    return payloads


# ─── Reference encryption ───────────────────────────────────────────


def _iv16(iv: bytes) -> bytes:
    return iv.ljust(16, b"\x00")


def ctr_encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    encryptor = Cipher(algorithms.AES(key), modes.CTR(_iv16(iv)), backend=default_backend()).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def cbc_encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    encryptor = Cipher(algorithms.AES(key), modes.CBC(_iv16(iv)), backend=default_backend()).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def _protected_ranges(subsamples: Sequence[Tuple[int, int]]) -> List[Tuple[int, int]]:
    ranges = []
    pos = 0
    for clear, protected in subsamples:
        pos += clear
        if protected:
            ranges.append((pos, protected))
        pos += protected
    return ranges


def encrypt_ctr_subsamples(key: bytes, iv: bytes, sample: bytes, subsamples: Sequence[Tuple[int, int]]) -> bytes:
    """cenc: one keystream running across the protected ranges of a sample"""
    ranges = _protected_ranges(subsamples)
    joined = b"".join(sample[p : p + n] for p, n in ranges)
    encrypted = ctr_encrypt(key, iv, joined)
    out = bytearray(sample)
    offset = 0
    for p, n in ranges:
        out[p : p + n] = encrypted[offset : offset + n]
        offset += n
    return bytes(out)


def encrypt_cbcs_range(key: bytes, iv: bytes, data: bytes, crypt: int = 1, skip: int = 9) -> bytes:
    """cbcs pattern over one range, CBC chained across the encrypted blocks"""
    positions = []
    pos = 0
    while pos + crypt * 16 <= len(data):
        positions.append(pos)
        pos += (crypt + skip) * 16
    if not positions:
        return data
    joined = b"".join(data[p : p + crypt * 16] for p in positions)
    encrypted = cbc_encrypt(key, iv, joined)
    out = bytearray(data)
    for i, p in enumerate(positions):
        out[p : p + crypt * 16] = encrypted[i * crypt * 16 : (i + 1) * crypt * 16]
    return bytes(out)


def encrypt_cbcs_subsamples(
    key: bytes, iv: bytes, sample: bytes, subsamples: Sequence[Tuple[int, int]], crypt: int = 1, skip: int = 9
) -> bytes:
    out = bytearray(sample)
    for p, n in _protected_ranges(subsamples):
        out[p : p + n] = encrypt_cbcs_range(key, iv, sample[p : p + n], crypt, skip)
    return bytes(out)
