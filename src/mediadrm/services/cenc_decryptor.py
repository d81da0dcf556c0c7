import logging
from typing import List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import CipherError, MissingEncryptionInfo
from ..models.schemas import ContentKey, KeyType
from .mp4_parser import (
    Buffer,
    EncryptionInfo,
    SubsampleEntry,
    iter_boxes,
    parse_senc,
    parse_trun,
)

logger = logging.getLogger(__name__)

CTR_SCHEMES = {"cenc", "cens"}

# cbcs pattern used when tenc carries 0:0
DEFAULT_CRYPT_BYTE_BLOCK = 1
DEFAULT_SKIP_BYTE_BLOCK = 9

BLOCK_SIZE = 16
MASK_64 = (1 << 64) - 1


class CipherProvider(Protocol):
    """AES primitives used by the engine. Implementations may offload to hardware."""

    async def decrypt_ctr(self, key: bytes, counter: bytes, data: bytes) -> bytes:
        ...

    async def decrypt_cbc(self, key: bytes, iv: bytes, data: bytes) -> bytes:
        ...


def build_counter_blocks(iv: bytes, start_block: int, count: int) -> np.ndarray:
    """
    AES-CTR counter blocks as a (count, 16) uint8 array.

    The IV is zero-extended to 16 bytes. The low 8 bytes are a big-endian
    block counter; overflow carries into the high 8 bytes.
    """
    iv16 = bytes(iv[:BLOCK_SIZE]).ljust(BLOCK_SIZE, b"\x00")
    iv_high = int.from_bytes(iv16[:8], "big")
    iv_low = int.from_bytes(iv16[8:], "big") + start_block

    # Carry produced by the start offset itself
    iv_high = (iv_high + (iv_low >> 64)) & MASK_64
    iv_low &= MASK_64

    all_blocks = np.zeros((count, BLOCK_SIZE), dtype=np.uint8)
    if count == 0:
        return all_blocks

    # uint64 addition wraps, so a wrapped counter is smaller than its start
    low_counters = np.arange(count, dtype=np.uint64) + np.uint64(iv_low)
    carry = (low_counters < np.uint64(iv_low)).astype(np.uint64)
    high_counters = np.full(count, iv_high, dtype=np.uint64) + carry

    all_blocks[:, :8].view(">u8")[:] = high_counters.astype(">u8")[:, np.newaxis]
    all_blocks[:, 8:].view(">u8")[:] = low_counters.astype(">u8")[:, np.newaxis]
    return all_blocks


class CryptographyCipherProvider:
    """Software AES via the cryptography package"""

    async def decrypt_ctr(self, key: bytes, counter: bytes, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            blocks_needed = (len(data) + BLOCK_SIZE - 1) // BLOCK_SIZE
            counters = build_counter_blocks(counter, 0, blocks_needed)

            # Encrypt all counter blocks in one ECB call to get the keystream
            encryptor = Cipher(algorithms.AES(key), modes.ECB(), backend=default_backend()).encryptor()
            keystream = encryptor.update(counters.tobytes()) + encryptor.finalize()

            out = np.frombuffer(data, dtype=np.uint8).copy()
            np.bitwise_xor(out, np.frombuffer(keystream, dtype=np.uint8, count=len(data)), out=out)
            return out.tobytes()
        except ValueError as e:
            raise CipherError(f"AES-CTR failed: {e}")

    async def decrypt_cbc(self, key: bytes, iv: bytes, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend()).decryptor()
            return decryptor.update(data) + decryptor.finalize()
        except ValueError as e:
            raise CipherError(f"AES-CBC failed: {e}")


_default_provider = CryptographyCipherProvider()


def _pattern(crypt_byte_block: int, skip_byte_block: int) -> Tuple[int, int]:
    if crypt_byte_block == 0 and skip_byte_block == 0:
        return DEFAULT_CRYPT_BYTE_BLOCK, DEFAULT_SKIP_BYTE_BLOCK
    return crypt_byte_block, skip_byte_block


def _counter_at(iv: bytes, block_index: int) -> bytes:
    return build_counter_blocks(iv, block_index, 1).tobytes()


def _cbc_iv(iv: bytes) -> bytes:
    # 8-byte IVs are zero-extended like the CTR counter
    return bytes(iv[:BLOCK_SIZE]).ljust(BLOCK_SIZE, b"\x00")


async def decrypt_cbcs_pattern(
    cipher: CipherProvider,
    key: bytes,
    iv: bytes,
    data: bytes,
    crypt_byte_block: int,
    skip_byte_block: int,
) -> bytes:
    """
    Decrypt a cbcs pattern-encrypted range.

    crypt_byte_block blocks are decrypted, skip_byte_block blocks copied, and
    so on. CBC chains across the encrypted blocks only. A trailing group with
    fewer than crypt_byte_block whole blocks is left as is.
    """
    crypt, skip = _pattern(crypt_byte_block, skip_byte_block)
    crypt_size = crypt * BLOCK_SIZE
    stride = (crypt + skip) * BLOCK_SIZE
    if crypt_size == 0:
        return bytes(data)

    positions = []
    pos = 0
    while pos + crypt_size <= len(data):
        positions.append(pos)
        pos += stride

    if not positions:
        return bytes(data)

    encrypted = b"".join(data[p : p + crypt_size] for p in positions)
    decrypted = await cipher.decrypt_cbc(key, _cbc_iv(iv), encrypted)

    out = bytearray(data)
    for i, p in enumerate(positions):
        out[p : p + crypt_size] = decrypted[i * crypt_size : (i + 1) * crypt_size]
    return bytes(out)


async def decrypt_full_sample(
    cipher: CipherProvider,
    key: bytes,
    sample: bytes,
    iv: bytes,
    scheme: str = "cenc",
    crypt_byte_block: int = 0,
    skip_byte_block: int = 0,
) -> bytes:
    """Decrypt a sample that has no subsample map"""
    if scheme in CTR_SCHEMES:
        return await cipher.decrypt_ctr(key, _counter_at(iv, 0), bytes(sample))

    if scheme == "cbcs":
        return await decrypt_cbcs_pattern(cipher, key, iv, bytes(sample), crypt_byte_block, skip_byte_block)

    if scheme == "cbc1":
        whole = len(sample) // BLOCK_SIZE * BLOCK_SIZE
        decrypted = await cipher.decrypt_cbc(key, _cbc_iv(iv), bytes(sample[:whole]))
        return decrypted + bytes(sample[whole:])

    raise CipherError(f"Unsupported protection scheme: {scheme}")


def _protected_ranges(sample_size: int, subsamples: Sequence[SubsampleEntry]) -> List[Tuple[int, int]]:
    """(offset, length) of every protected range, clipped to the sample"""
    ranges = []
    pos = 0
    for sub in subsamples:
        pos += sub.clear_bytes
        if pos >= sample_size:
            break
        length = min(sub.protected_bytes, sample_size - pos)
        if length < sub.protected_bytes:
            logger.warning(
                f"Subsample map exceeds sample size {sample_size}, truncating protected range"
            )
        if length > 0:
            ranges.append((pos, length))
        pos += sub.protected_bytes
    return ranges


async def decrypt_subsample_sample(
    cipher: CipherProvider,
    key: bytes,
    sample: bytes,
    iv: bytes,
    subsamples: Sequence[SubsampleEntry],
    scheme: str = "cenc",
    crypt_byte_block: int = 0,
    skip_byte_block: int = 0,
) -> bytes:
    """
    Decrypt the protected ranges of a subsample-encrypted sample.

    Clear bytes are copied verbatim. For CTR the keystream continues across
    protected ranges of the same sample. cbc1 chains CBC across the ranges,
    cbcs restarts from the IV in every range.
    """
    out = bytearray(sample)
    ranges = _protected_ranges(len(sample), subsamples)

    if scheme in CTR_SCHEMES:
        consumed = 0
        for pos, length in ranges:
            # Resume the keystream mid-block by prefixing the bytes already used
            block_index, partial = divmod(consumed, BLOCK_SIZE)
            chunk = bytes(partial) + bytes(sample[pos : pos + length])
            decrypted = await cipher.decrypt_ctr(key, _counter_at(iv, block_index), chunk)
            out[pos : pos + length] = decrypted[partial:]
            consumed += length

    elif scheme == "cbc1":
        joined = b"".join(bytes(sample[pos : pos + length]) for pos, length in ranges)
        whole = len(joined) // BLOCK_SIZE * BLOCK_SIZE
        decrypted = await cipher.decrypt_cbc(key, _cbc_iv(iv), joined[:whole]) + joined[whole:]
        offset = 0
        for pos, length in ranges:
            out[pos : pos + length] = decrypted[offset : offset + length]
            offset += length

    elif scheme == "cbcs":
        for pos, length in ranges:
            out[pos : pos + length] = await decrypt_cbcs_pattern(
                cipher, key, iv, bytes(sample[pos : pos + length]), crypt_byte_block, skip_byte_block
            )

    else:
        raise CipherError(f"Unsupported protection scheme: {scheme}")

    return bytes(out)


def _resolve_iv(entry_iv: Optional[bytes], info: EncryptionInfo, index: int) -> bytes:
    if entry_iv:
        return entry_iv
    if info.constant_iv:
        return info.constant_iv
    raise MissingEncryptionInfo(f"No IV for sample {index}: no senc entry and no constant IV")


def _normalize_key(key: Union[bytes, str, ContentKey]) -> bytes:
    if isinstance(key, ContentKey):
        key = key.key
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError:
            raise ValueError("Key must be hex-encoded")
    if len(key) != 16:
        raise ValueError(f"Key must be exactly 16 bytes, got {len(key)}")
    return key


async def decrypt_segment(
    segment: Buffer,
    encryption_info: EncryptionInfo,
    key: Union[bytes, str, ContentKey],
    cipher: Optional[CipherProvider] = None,
    debug: bool = False,
) -> bytes:
    """
    Decrypt every sample of a media segment.

    Each mdat is paired with the moof before it. Samples are laid out back to
    back from the start of the mdat payload using the trun sizes, and matched
    to senc entries by index. Without a trun the whole mdat is one sample.
    Samples whose IV cannot be resolved, or whose decryption fails, are left
    encrypted and the rest of the segment is still processed.

    Args:
        segment: Media segment bytes (moof + mdat, possibly repeated)
        encryption_info: Result of analyze_encryption on the init segment
        key: 16-byte content key, as bytes, hex or ContentKey
        cipher: AES provider, defaults to CryptographyCipherProvider
        debug: Enable per-sample debug logging

    Returns:
        Segment with the same layout and sample data decrypted in place
    """
    if not encryption_info.is_encrypted:
        return bytes(segment)

    key_bytes = _normalize_key(key)
    cipher = cipher or _default_provider
    scheme = encryption_info.effective_scheme
    iv_size = encryption_info.per_sample_iv_size
    out = bytearray(segment)

    if debug:
        logger.debug(
            f"Decrypting segment: size={len(out)}, scheme={scheme}, iv_size={iv_size}, "
            f"constant_iv={encryption_info.constant_iv is not None}"
        )

    moof = None
    decrypted_samples = 0
    skipped_samples = 0

    for box in list(iter_boxes(segment)):
        if box.type == "moof":
            moof = box
            continue
        if box.type != "mdat":
            continue

        if moof is not None:
            samples = parse_trun(segment, moof.data_offset, moof.end)
            senc = parse_senc(segment, iv_size, moof.data_offset, moof.end, debug)
        else:
            samples, senc = [], None
        moof = None

        entries = senc.samples if senc else []
        if senc and samples and len(entries) != len(samples):
            logger.warning(
                f"senc has {len(entries)} entries for {len(samples)} trun samples, "
                f"samples without an entry stay encrypted"
            )

        if samples:
            layout = []
            for s in samples:
                if s.size is None:
                    logger.warning("trun sample without size and no tfhd default, stopping at that sample")
                    break
                layout.append(s.size)
        else:
            layout = [len(box.payload)]

        position = box.data_offset
        for index, size in enumerate(layout):
            if size == 0:
                continue
            if position + size > box.end:
                logger.warning(
                    f"Sample {index} exceeds mdat bounds: {position + size} > {box.end}, stopping"
                )
                break

            entry = entries[index] if index < len(entries) else None
            try:
                iv = _resolve_iv(entry.iv if entry else None, encryption_info, index)
                sample = bytes(out[position : position + size])

                if entry and entry.subsamples:
                    decrypted = await decrypt_subsample_sample(
                        cipher,
                        key_bytes,
                        sample,
                        iv,
                        entry.subsamples,
                        scheme,
                        encryption_info.crypt_byte_block,
                        encryption_info.skip_byte_block,
                    )
                elif scheme == "cens":
                    raise MissingEncryptionInfo(f"cens sample {index} has no subsample map")
                else:
                    decrypted = await decrypt_full_sample(
                        cipher,
                        key_bytes,
                        sample,
                        iv,
                        scheme,
                        encryption_info.crypt_byte_block,
                        encryption_info.skip_byte_block,
                    )

                out[position : position + size] = decrypted
                decrypted_samples += 1

                if debug:
                    logger.debug(
                        f"Sample {index}: offset={position}, size={size}, iv={iv.hex()}, "
                        f"subsamples={len(entry.subsamples) if entry else 0}"
                    )
            except (MissingEncryptionInfo, CipherError) as e:
                skipped_samples += 1
                logger.warning(f"Sample {index} left encrypted: {e}")

            position += size

    if debug:
        logger.debug(f"Segment done: {decrypted_samples} decrypted, {skipped_samples} left encrypted")

    return bytes(out)


def select_key(keys: Sequence[ContentKey], kid: Optional[str] = None) -> Optional[ContentKey]:
    """Content key matching kid, else the first CONTENT key, else the first key"""
    if not keys:
        return None

    if kid:
        wanted = kid.replace("-", "").lower()
        for key in keys:
            if key.kid == wanted:
                return key

    for key in keys:
        if key.type == KeyType.CONTENT:
            return key
    return keys[0]
