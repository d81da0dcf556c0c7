import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Dict, Iterable, List, Optional, Sequence, Union

import aiohttp

from ..errors import DownloadError, MalformedBox
from ..models.schemas import ContentKey
from .cache import KeyStore, LRUCache
from .cenc_decryptor import CipherProvider, decrypt_segment as decrypt_cenc_segment, select_key
from .mp4_parser import EncryptionInfo, analyze_encryption, find_box, strip_protection_boxes

logger = logging.getLogger(__name__)

# Default Chrome User-Agent for Windows
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

MP4_TOP_LEVEL_TYPES = (b"ftyp", b"styp", b"moof", b"moov", b"mdat", b"sidx", b"emsg")

KeyInput = Union[str, bytes, ContentKey, Sequence[ContentKey]]


class DecryptorService:
    """Downloads init/media segments and runs them through the CENC engine"""

    def __init__(
        self,
        max_concurrent_downloads: int = 10,
        cache: Optional[LRUCache] = None,
        key_store: Optional[KeyStore] = None,
        cipher: Optional[CipherProvider] = None,
    ):
        """
        Args:
            max_concurrent_downloads: Maximum number of concurrent downloads
            cache: Cache for parsed init segments (EncryptionInfo per URL)
            key_store: Keys looked up by KID when a request carries no key
            cipher: AES provider passed to the decryption engine
        """
        self.session: Optional[aiohttp.ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_downloads)
        self.max_concurrent = max_concurrent_downloads
        self.cache = cache
        self.key_store = key_store
        self.cipher = cipher

    async def get_session(
        self, proxy: Optional[str] = None, user_agent: Optional[str] = None
    ) -> aiohttp.ClientSession:
        """Shared session, or a dedicated one when a proxy or user agent is requested"""
        if proxy or user_agent:
            return await self._create_session(proxy, user_agent)

        if self.session is None or self.session.closed:
            self.session = await self._create_session(None, None)
        return self.session

    async def _create_session(
        self, proxy: Optional[str] = None, user_agent: Optional[str] = None
    ) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=30, connect=10)
        headers = {"User-Agent": user_agent or DEFAULT_USER_AGENT}

        if proxy and proxy.startswith("socks"):
            try:
                from aiohttp_socks import ProxyConnector
            except ImportError:
                raise RuntimeError(
                    "SOCKS proxy support requires aiohttp-socks. "
                    "Install with: pip install mediadrm[socks]"
                )
            connector = ProxyConnector.from_url(proxy)
        else:
            connector = aiohttp.TCPConnector(limit=100, limit_per_host=10)

        return aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers=headers,
            trust_env=False,
        )

    async def fetch(
        self, url: str, proxy: Optional[str] = None, user_agent: Optional[str] = None
    ) -> bytes:
        """
        Download a resource under the concurrency limit

        Raises:
            DownloadError: If every attempt fails or the body is empty
        """
        session = await self.get_session(proxy, user_agent)
        owns_session = session is not self.session

        async with self.semaphore:
            try:
                data = await self._download(url, session, proxy)
            finally:
                if owns_session and not session.closed:
                    await session.close()

        if not data:
            raise DownloadError(f"Downloaded resource is empty: {url}")
        return data

    async def _download(
        self, url: str, session: aiohttp.ClientSession, proxy: Optional[str] = None
    ) -> bytes:
        # SOCKS proxies live in the connector, HTTP proxies are passed per request
        proxy_url = proxy if proxy and not proxy.startswith("socks") else None
        retry_count = 1 if proxy else 3

        for attempt in range(retry_count):
            try:
                async with session.get(url, proxy=proxy_url) as response:
                    response.raise_for_status()
                    return await response.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if proxy:
                    logger.error(f"Proxy request failed: {e}")
                    raise DownloadError(f"Failed to download {url} via proxy {proxy}: {e}") from e

                if attempt == retry_count - 1:
                    logger.error(f"All download attempts failed for {url}")
                    raise DownloadError(f"Failed to download {url}: {e}") from e

                wait_time = (1 if isinstance(e, aiohttp.ClientError) else 2) * (attempt + 1)
                logger.warning(
                    f"Download attempt {attempt + 1} failed, retrying in {wait_time}s: {e}"
                )
                await asyncio.sleep(wait_time)

        raise DownloadError(f"Failed to download {url}")

    @staticmethod
    def looks_like_mp4(data: bytes) -> bool:
        """Quick check that the data starts with a common top-level box"""
        return len(data) >= 8 and bytes(data[4:8]) in MP4_TOP_LEVEL_TYPES

    async def analyze_init(
        self, url: str, proxy: Optional[str] = None, user_agent: Optional[str] = None
    ) -> EncryptionInfo:
        """
        Fetch an init segment and extract its encryption parameters

        Results are cached per URL when a cache is configured.

        Raises:
            MalformedBox: If the resource has no moov box
        """
        cache_key = f"init:{url}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        data = await self.fetch(url, proxy, user_agent)
        if find_box(data, "moov") is None:
            raise MalformedBox(f"Init segment has no moov box: {url}")

        info = analyze_encryption(data)
        logger.info(
            f"Init segment {url}: encrypted={info.is_encrypted}, scheme={info.effective_scheme}, "
            f"kid={info.default_kid}, pssh={len(info.pssh_list)}"
        )
        if self.cache is not None:
            self.cache.set(cache_key, info)
        return info

    def resolve_key(self, info: EncryptionInfo, key: Optional[KeyInput] = None) -> KeyInput:
        """
        Explicit key, else the key store entry for the track's default KID

        A list of keys, as returned by a CDM, is narrowed to the one matching
        the default KID.
        """
        if isinstance(key, (list, tuple)):
            selected = select_key(key, info.default_kid)
            if selected is None:
                raise ValueError("Empty key list")
            return selected
        if key:
            return key
        if not info.is_encrypted:
            return b"\x00" * 16
        if self.key_store is not None and info.default_kid:
            stored = self.key_store.get(info.default_kid)
            if stored is not None:
                return stored
        raise ValueError(f"No key supplied and none known for KID {info.default_kid}")

    async def decrypt_segment(
        self,
        url: str,
        key: Optional[KeyInput] = None,
        init_url: Optional[str] = None,
        encryption_info: Optional[EncryptionInfo] = None,
        remove_protection_boxes: bool = False,
        proxy: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bytes:
        """
        Download and decrypt a media segment

        Args:
            url: Segment URL
            key: Content key (hex, bytes or ContentKey); looked up by KID if omitted
            init_url: Init segment URL, used when encryption_info is not given
            encryption_info: Parameters from a previously analyzed init segment
            remove_protection_boxes: Neutralize senc/saiz/saio/... in the output

        Raises:
            ValueError: If neither init_url nor encryption_info is given, or no key is known
        """
        if encryption_info is None:
            if not init_url:
                raise ValueError("Either init_url or encryption_info is required")
            encryption_info = await self.analyze_init(init_url, proxy, user_agent)

        content_key = self.resolve_key(encryption_info, key)
        data = await self.fetch(url, proxy, user_agent)
        if not self.looks_like_mp4(data):
            logger.warning(f"Downloaded data from {url} doesn't appear to be MP4")

        decrypted = await decrypt_cenc_segment(data, encryption_info, content_key, cipher=self.cipher)
        if remove_protection_boxes:
            decrypted = bytes(strip_protection_boxes(decrypted))
        return decrypted

    async def decrypt_batch(
        self, segments: List[Dict], max_concurrent: Optional[int] = None
    ) -> List[bytes]:
        """
        Decrypt several segments concurrently

        Args:
            segments: Dicts with 'url' and optional 'key', 'init_url',
                'encryption_info', 'remove_protection_boxes', 'proxy', 'user_agent'
            max_concurrent: Override default concurrency limit

        Returns:
            Decrypted segments in the same order as the input
        """
        original = self.semaphore
        if max_concurrent and max_concurrent != self.max_concurrent:
            self.semaphore = asyncio.Semaphore(max_concurrent)

        try:
            results = await asyncio.gather(
                *(
                    self.decrypt_segment(
                        url=seg["url"],
                        key=seg.get("key"),
                        init_url=seg.get("init_url"),
                        encryption_info=seg.get("encryption_info"),
                        remove_protection_boxes=seg.get("remove_protection_boxes", False),
                        proxy=seg.get("proxy"),
                        user_agent=seg.get("user_agent"),
                    )
                    for seg in segments
                ),
                return_exceptions=True,
            )
        finally:
            self.semaphore = original

        decrypted: List[bytes] = []
        for i, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error(f"Segment {i} failed: {result}")
                raise result
            decrypted.append(result)
        return decrypted

    async def stream_decrypted(
        self,
        init_url: str,
        segment_urls: Iterable[str],
        key: Optional[KeyInput] = None,
        include_init: bool = False,
        remove_protection_boxes: bool = False,
        prefetch: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """
        Yield decrypted segments in the order the URLs are supplied

        Up to ``prefetch`` downloads run ahead of the consumer. With
        include_init the init segment is yielded first.
        """
        info = await self.analyze_init(init_url)
        content_key = self.resolve_key(info, key)

        if include_init:
            init_data = await self.fetch(init_url)
            yield bytes(strip_protection_boxes(init_data)) if remove_protection_boxes else init_data

        urls = iter(segment_urls)
        window = max(1, prefetch or self.max_concurrent)
        pending: Deque["asyncio.Future[bytes]"] = deque()

        def schedule() -> bool:
            url = next(urls, None)
            if url is None:
                return False
            pending.append(
                asyncio.ensure_future(
                    self.decrypt_segment(
                        url,
                        key=content_key,
                        encryption_info=info,
                        remove_protection_boxes=remove_protection_boxes,
                    )
                )
            )
            return True

        for _ in range(window):
            if not schedule():
                break

        try:
            while pending:
                data = await pending.popleft()
                schedule()
                yield data
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        """Cleanup resources"""
        if self.session and not self.session.closed:
            await self.session.close()
            await asyncio.sleep(0.1)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
