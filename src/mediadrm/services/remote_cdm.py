import asyncio
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import aiohttp
from pydantic import ValidationError

from ..errors import (
    CdmApiError,
    CdmCancelledError,
    CdmError,
    CdmProtocolError,
    CdmSessionError,
    LicenseServerError,
)
from ..models.schemas import ContentKey, KeyExportFormat, KeyType
from ..utils.utils import decode_base64, encode_base64

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_TYPE = "ANDROID"
DEFAULT_CDRM_URL = "https://cdrm-project.com/wv"
DEFAULT_TIMEOUT = 30.0

LICENSE_FIELDS = ("license", "License", "license_data", "data")
KEY_PAIR_RE = re.compile(r"([0-9a-f]{32}):([0-9a-f]{32})", re.IGNORECASE)
ZERO_KID = "0" * 32


class CdmSessionState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    CHALLENGE_ISSUED = "challenge_issued"
    LICENSE_PARSED = "license_parsed"
    KEYS_EXTRACTED = "keys_extracted"


def _lookup(payload: Any, *paths: str) -> Any:
    """First truthy value among dotted paths into nested dicts"""
    for path in paths:
        value = payload
        for part in path.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        if value:
            return value
    return None


def unwrap_license_response(body: bytes, content_type: str = "") -> str:
    """
    Turn a license server response into the base64 license message

    JSON bodies are searched for a known wrapper field; anything else, or a
    JSON body without one, is treated as the raw license bytes.
    """
    if "json" in (content_type or "").lower():
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            for name in LICENSE_FIELDS:
                value = payload.get(name)
                if value and isinstance(value, str):
                    return value
    return encode_base64(body)


def normalize_keys(raw_keys: Iterable[Any], default_type: str = KeyType.CONTENT.value) -> List[ContentKey]:
    """
    Build ContentKey records from CDM key dicts (or existing ContentKeys)

    Dashes are stripped, hex is lower-cased, all-zero KIDs are dropped and
    entries that do not validate are skipped with a warning.
    """
    keys: List[ContentKey] = []
    for raw in raw_keys:
        if isinstance(raw, ContentKey):
            key = raw
        elif isinstance(raw, Mapping):
            try:
                key = ContentKey(
                    kid=raw.get("kid") or raw.get("key_id") or "",
                    key=raw.get("key") or "",
                    type=raw.get("type") or default_type,
                    security_level=raw.get("security_level"),
                )
            except ValidationError as e:
                logger.warning(f"Skipping invalid key entry {raw!r}: {e.errors()[0]['msg']}")
                continue
        else:
            logger.warning(f"Skipping unexpected key entry of type {type(raw).__name__}")
            continue

        if key.kid == ZERO_KID:
            continue
        keys.append(key)
    return keys


def format_keys(keys: Iterable[ContentKey], fmt: Union[KeyExportFormat, str] = KeyExportFormat.KID_KEY) -> str:
    """
    Render keys for external tools

    Args:
        keys: Keys to render
        fmt: "kid:key" (one pair per line), "mp4decrypt" (--key arguments)
            or "json"
    """
    fmt = KeyExportFormat(fmt)
    keys = list(keys)
    if fmt == KeyExportFormat.MP4DECRYPT:
        return " ".join(f"--key {k.kid}:{k.key}" for k in keys)
    if fmt == KeyExportFormat.JSON:
        return json.dumps([{"kid": k.kid, "key": k.key, "type": k.type.value} for k in keys])
    return "\n".join(f"{k.kid}:{k.key}" for k in keys)


class _HttpClient:
    """Shared aiohttp plumbing for both CDM variants"""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.cancel_event = cancel_event
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, trust_env=False)
            self._owns_session = True
        return self._session

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise CdmCancelledError("Key extraction cancelled")

    async def _post_license(
        self, license_url: str, challenge: bytes, headers: Optional[Mapping[str, str]] = None
    ) -> str:
        self._check_cancelled()
        request_headers = {"Content-Type": "application/octet-stream"}
        request_headers.update(headers or {})

        session = await self._get_session()
        try:
            async with session.post(
                license_url, data=challenge, headers=request_headers, timeout=self.timeout
            ) as response:
                body = await response.read()
                if not 200 <= response.status < 300:
                    raise LicenseServerError(response.status, body.decode("utf-8", "replace"))
                content_type = response.headers.get("Content-Type", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CdmError(f"License request to {license_url} failed: {e}") from e

        logger.info(f"License server answered with {len(body)} bytes ({content_type or 'no content type'})")
        return unwrap_license_response(body, content_type)

    async def aclose(self):
        """Close the HTTP session if this client created it"""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class RemoteCdmClient(_HttpClient):
    """
    Session based remote CDM (pywidevine-serve style API)

    Lifecycle: open -> get_challenge -> send_license_challenge ->
    parse_license -> get_keys -> close. ``extract_keys`` runs the whole
    exchange and always closes the remote session.
    """

    def __init__(
        self,
        host: str,
        secret: str = "",
        device_name: str = "",
        device_type: str = DEFAULT_DEVICE_TYPE,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        super().__init__(timeout=timeout, session=session, cancel_event=cancel_event)
        self.host = (host or "").rstrip("/")
        self.secret = secret or ""
        self.device_name = device_name or ""
        self.device_type = device_type or DEFAULT_DEVICE_TYPE
        self.session_id: Optional[str] = None
        self.state = CdmSessionState.CLOSED

    def _require(self, *states: CdmSessionState):
        if self.state not in states:
            expected = " or ".join(s.value for s in states)
            raise CdmSessionError(f"CDM session is {self.state.value}, expected {expected}")

    async def _request(self, endpoint: str, body: Dict[str, Any], check_cancel: bool = True) -> Any:
        if check_cancel:
            self._check_cancelled()

        url = f"{self.host}{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Secret-Key"] = self.secret

        session = await self._get_session()
        try:
            async with session.post(
                url, data=json.dumps(body), headers=headers, timeout=self.timeout
            ) as response:
                text = await response.text(errors="replace")
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CdmError(f"CDM request to {endpoint} failed: {e}") from e

        if not 200 <= status < 300:
            raise CdmApiError(status, text)
        try:
            return json.loads(text)
        except ValueError:
            raise CdmProtocolError(f"CDM API response is not valid JSON ({status})", text)

    async def open(self) -> str:
        self._require(CdmSessionState.CLOSED)
        data = await self._request(f"/{self.device_name}/open", {})
        session_id = _lookup(data, "data.session_id", "session_id")
        if not session_id:
            raise CdmProtocolError("No session_id in response", json.dumps(data))

        self.session_id = str(session_id)
        self.state = CdmSessionState.OPEN
        logger.info(f"Remote CDM session opened: {self.session_id}")
        return self.session_id

    async def get_challenge(self, pssh_base64: str, privacy_mode: bool = False) -> str:
        """Ask the CDM for a license challenge; returns it base64 encoded"""
        self._require(CdmSessionState.OPEN)
        data = await self._request(
            f"/{self.device_name}/get_license_challenge/{self.device_type}",
            {
                "session_id": self.session_id,
                "init_data": pssh_base64,
                "privacy_mode": privacy_mode,
            },
        )
        challenge = _lookup(
            data, "data.challenge_b64", "data.challenge", "challenge_b64", "challenge"
        )
        if not challenge or not isinstance(challenge, str):
            raise CdmProtocolError("No challenge in response", json.dumps(data))

        self.state = CdmSessionState.CHALLENGE_ISSUED
        logger.info(f"Remote CDM challenge generated, length: {len(challenge)}")
        return challenge

    async def send_license_challenge(
        self,
        license_url: str,
        challenge: Union[str, bytes],
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        """POST the challenge to the content's license server; returns the base64 license"""
        self._require(CdmSessionState.CHALLENGE_ISSUED)
        if isinstance(challenge, str):
            try:
                challenge = decode_base64(challenge)
            except ValueError as e:
                raise CdmProtocolError(f"Challenge is not base64: {e}")
        return await self._post_license(license_url, challenge, headers)

    async def parse_license(self, license_base64: str):
        self._require(CdmSessionState.CHALLENGE_ISSUED)
        await self._request(
            f"/{self.device_name}/parse_license",
            {"session_id": self.session_id, "license_message": license_base64},
        )
        self.state = CdmSessionState.LICENSE_PARSED
        logger.info("Remote CDM license parsed")

    async def get_keys(self, key_type: str = KeyType.CONTENT.value) -> List[ContentKey]:
        self._require(CdmSessionState.LICENSE_PARSED, CdmSessionState.KEYS_EXTRACTED)
        data = await self._request(
            f"/{self.device_name}/get_keys/{key_type}", {"session_id": self.session_id}
        )
        raw_keys = _lookup(data, "data.keys", "keys") or []
        if not isinstance(raw_keys, list):
            raise CdmProtocolError("Keys in response are not a list", json.dumps(data))

        keys = normalize_keys(raw_keys, default_type=key_type)
        self.state = CdmSessionState.KEYS_EXTRACTED
        logger.info(f"Remote CDM returned {len(keys)} {key_type} key(s)")
        return keys

    async def close(self):
        """Close the remote session; failures are logged and swallowed"""
        if self.session_id is None:
            self.state = CdmSessionState.CLOSED
            return

        session_id = self.session_id
        try:
            await self._request(f"/{self.device_name}/close/{session_id}", {}, check_cancel=False)
            logger.info(f"Remote CDM session closed: {session_id}")
        except CdmError as e:
            logger.warning(f"Remote CDM close error (non-fatal): {e}")
        finally:
            self.session_id = None
            self.state = CdmSessionState.CLOSED

    async def extract_keys(
        self,
        pssh_base64: str,
        license_url: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> List[ContentKey]:
        """Run the full license exchange and return the content keys"""
        try:
            await self.open()
            challenge = await self.get_challenge(pssh_base64)
            license_base64 = await self.send_license_challenge(license_url, challenge, headers)
            await self.parse_license(license_base64)
            return await self.get_keys(KeyType.CONTENT.value)
        finally:
            await self.close()


class CdrmClient(_HttpClient):
    """One-shot CDRM-style key service: PSSH + license URL in, KID:KEY lines out"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        super().__init__(timeout=timeout, session=session, cancel_event=cancel_event)
        self.api_url = (api_url or DEFAULT_CDRM_URL).rstrip("/")

    @staticmethod
    def parse_key_lines(text: str) -> List[ContentKey]:
        """KID:KEY pairs anywhere in the response body, plain text or JSON wrapped"""
        keys = [{"kid": m.group(1), "key": m.group(2)} for m in KEY_PAIR_RE.finditer(text)]
        return normalize_keys(keys)

    async def extract_keys(
        self,
        pssh_base64: str,
        license_url: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> List[ContentKey]:
        self._check_cancelled()
        body = {
            "PSSH": pssh_base64,
            "License": license_url,
            "Headers": json.dumps(dict(headers or {})),
            "JSON": "",
            "Cookies": "",
            "Data": "",
            "Proxy": "",
        }

        session = await self._get_session()
        try:
            async with session.post(
                self.api_url,
                data=json.dumps(body),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            ) as response:
                text = await response.text(errors="replace")
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CdmError(f"CDRM request failed: {e}") from e

        if not 200 <= status < 300:
            raise CdmApiError(status, text, f"CDRM API error {status}")

        keys = self.parse_key_lines(text)
        logger.info(f"CDRM returned {len(keys)} key(s)")
        return keys
