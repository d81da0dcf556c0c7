import base64
import binascii


def _pad(encoded: str) -> str:
    encoded = "".join(encoded.split())
    return encoded + "=" * (-len(encoded) % 4)


def decode_base64(encoded: str) -> bytes:
    """
    Decode standard or URL-safe base64, tolerating missing padding

    Raises:
        ValueError: If the input is not base64
    """
    padded = _pad(encoded)
    try:
        if "-" in padded or "_" in padded:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 data: {e}")


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_base64_url(encoded: str) -> str:
    """
    Decode a base64 URL-safe encoded URL (padding optional)

    Raises:
        ValueError: If decoding fails
    """
    try:
        return base64.urlsafe_b64decode(_pad(encoded).encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValueError(f"Failed to decode base64 URL: {e}")


def compose_url_from_template(base64_part: str, template_suffix: str = "") -> str:
    """
    Compose a segment URL from a base64 encoded base URL and a template path

    Args:
        base64_part: Base64 URL-safe encoded base URL
        template_suffix: Path appended to the base (e.g., "video/seg-12.m4s")
    """
    base_url = decode_base64_url(base64_part)
    if not template_suffix:
        return base_url
    return base_url.rstrip("/") + "/" + template_suffix.lstrip("/")


def normalize_hex_id(value: str) -> str:
    """Lower-case hex with dashes, braces and whitespace removed"""
    cleaned = "".join(value.split()).strip("{}").replace("-", "").lower()
    bytes.fromhex(cleaned)
    return cleaned
