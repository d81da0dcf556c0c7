import hashlib
import io
import logging
import os
import time
from dataclasses import asdict
from typing import List, Optional, Union

import psutil
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response, StreamingResponse

from .errors import CdmError, DownloadError, MalformedBox, ManifestParseError
from .models.schemas import (
    ChallengeAnalyzeRequest,
    DecryptRequest,
    DecryptResponse,
    EncryptionInfoResponse,
    HealthResponse,
    InitAnalyzeRequest,
    KeyExportFormat,
    KeysRequest,
    KeysResponse,
    LicenseAnalyzeRequest,
    ManifestParseRequest,
    ManifestParseResponse,
    ManifestPsshInfo,
    PsshBoxInfo,
)
from .services.cache import KeyStore, LRUCache
from .services.decryptor import DecryptorService
from .services.manifest_parser import (
    Manifest,
    MssManifest,
    extract_pssh_from_manifest,
    get_drm_type,
    parse_manifest,
)
from .services.mp4_parser import EncryptionInfo, system_id_name
from .services.remote_cdm import CdrmClient, RemoteCdmClient, format_keys
from .services.widevine_proto import (
    analyze_challenge,
    analyze_license_response,
    pssh_box_to_data,
    pssh_data_to_pssh_box,
)
from .utils.utils import compose_url_from_template, decode_base64, encode_base64, normalize_hex_id

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Media DRM API",
    description="Manifest, init segment and license inspection plus CENC segment decryption",
    version=VERSION,
)

# Injected by main.py (or tests) through init_services
decryptor: Optional[DecryptorService] = None
cache: Optional[LRUCache] = None
key_store: Optional[KeyStore] = None
cdm_client: Optional[Union[RemoteCdmClient, CdrmClient]] = None

app.state.start_time = time.time()
app.state.active_tasks = 0
app.state.cache_hits = 0
app.state.cache_misses = 0


def init_services(
    decryptor_service: DecryptorService,
    cache_service: LRUCache,
    cdm: Optional[Union[RemoteCdmClient, CdrmClient]] = None,
    keys: Optional[KeyStore] = None,
):
    """Wire the services used by the endpoints"""
    global decryptor, cache, key_store, cdm_client
    decryptor = decryptor_service
    cache = cache_service
    key_store = keys if keys is not None else KeyStore(cache_service)
    cdm_client = cdm
    if decryptor.key_store is None:
        decryptor.key_store = key_store

    app.state.start_time = time.time()
    app.state.active_tasks = 0
    app.state.cache_hits = 0
    app.state.cache_misses = 0


def get_decryptor() -> DecryptorService:
    if decryptor is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return decryptor


def get_cache() -> LRUCache:
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache not initialized")
    return cache


def get_key_store() -> KeyStore:
    if key_store is None:
        raise HTTPException(status_code=503, detail="Key store not initialized")
    return key_store


def get_cdm():
    if cdm_client is None:
        raise HTTPException(status_code=503, detail="No CDM configured")
    return cdm_client


def to_http_error(error: Exception) -> HTTPException:
    """Map library errors onto HTTP status codes"""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, (ManifestParseError, MalformedBox, ValueError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (CdmError, DownloadError)):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _decode_b64_field(value: str, name: str) -> bytes:
    try:
        return decode_base64(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"{name} is not valid base64: {e}")


def _segment_cache_key(url: str, init_url: Optional[str], key: Optional[str], strip: bool) -> str:
    return "segment:" + hashlib.sha256(f"{url}|{init_url or ''}|{key or ''}|{strip}".encode()).hexdigest()


def _encryption_info_response(info: EncryptionInfo) -> EncryptionInfoResponse:
    return EncryptionInfoResponse(
        is_encrypted=info.is_encrypted,
        scheme=info.scheme,
        scheme_version=info.scheme_version,
        default_kid=info.default_kid,
        per_sample_iv_size=info.per_sample_iv_size,
        constant_iv=info.constant_iv.hex() if info.constant_iv else None,
        crypt_byte_block=info.crypt_byte_block,
        skip_byte_block=info.skip_byte_block,
        original_format=info.original_format,
        pssh=[
            PsshBoxInfo(
                system_id=p.system_id,
                system_name=p.system_name,
                version=p.version,
                kid_list=p.kid_list,
                data_base64=encode_base64(p.data),
                box_base64=p.full_box_base64,
            )
            for p in info.pssh_list
        ],
    )


async def _decrypt_cached(
    service: DecryptorService,
    cache_service: LRUCache,
    url: str,
    init_url: Optional[str],
    key: Optional[str],
    remove_protection_boxes: bool,
):
    """Decrypt one segment, serving repeated requests from the cache"""
    if not init_url:
        raise ValueError("init_url is required to read the track's encryption parameters")
    info = await service.analyze_init(init_url)

    cache_key = _segment_cache_key(url, init_url, key, remove_protection_boxes)
    cached = cache_service.get(cache_key)
    if cached is not None:
        app.state.cache_hits += 1
        return cached, info

    app.state.cache_misses += 1
    data = await service.decrypt_segment(
        url,
        key=key,
        encryption_info=info,
        remove_protection_boxes=remove_protection_boxes,
    )
    cache_service.set(cache_key, data)
    return data, info


def _drm_type(manifest: Manifest, content: str) -> Optional[str]:
    if isinstance(manifest, MssManifest):
        names = [system_id_name(p.system_id) or p.system_id for p in manifest.protection]
        return ", ".join(names) or None
    return get_drm_type(content, manifest.manifest_type)


def _media_response(data: bytes, download: bool = False) -> Response:
    headers = {"Content-Length": str(len(data))}
    if download:
        headers["Content-Disposition"] = "attachment; filename=segment.mp4"
        return Response(content=data, media_type="video/mp4", headers=headers)

    if len(data) > 10 * 1024 * 1024:
        return StreamingResponse(io.BytesIO(data), media_type="video/mp4", headers=headers)
    return Response(content=data, media_type="video/mp4", headers=headers)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with system metrics"""
    process = psutil.Process(os.getpid())

    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime=time.time() - app.state.start_time,
        memory_usage=process.memory_info().rss / 1024 / 1024,
        active_tasks=app.state.active_tasks,
        cdm_configured=cdm_client is not None,
    )


@app.post("/manifest/parse", response_model=ManifestParseResponse)
async def manifest_parse(
    request: ManifestParseRequest,
    decryptor_service: DecryptorService = Depends(get_decryptor),
):
    """
    Parse a DASH, HLS or Smooth Streaming manifest

    - **url**: Manifest URL, downloaded when **content** is omitted
    - **content**: Raw manifest text
    - **base_url**: Base for relative URLs
    """
    url = str(request.url) if request.url else ""
    try:
        content = request.content
        if content is None:
            if not url:
                raise ValueError("Either url or content is required")
            content = (await decryptor_service.fetch(url)).decode("utf-8-sig", errors="replace")

        manifest = parse_manifest(content, url, request.base_url)
    except Exception as e:
        logger.error(f"Manifest parsing failed: {e}")
        raise to_http_error(e)

    return ManifestParseResponse(
        type=manifest.manifest_type.value,
        drm_type=_drm_type(manifest, content),
        pssh=[ManifestPsshInfo(**asdict(p)) for p in extract_pssh_from_manifest(manifest)],
        manifest=asdict(manifest),
    )


@app.post("/init/analyze", response_model=EncryptionInfoResponse)
async def init_analyze(
    request: InitAnalyzeRequest,
    decryptor_service: DecryptorService = Depends(get_decryptor),
):
    """Download an init segment and report its encryption parameters and PSSH boxes"""
    try:
        info = await decryptor_service.analyze_init(str(request.url))
    except Exception as e:
        logger.error(f"Init segment analysis failed: {e}")
        raise to_http_error(e)
    return _encryption_info_response(info)


@app.post("/keys", response_model=KeysResponse)
async def extract_keys(
    request: KeysRequest,
    cdm=Depends(get_cdm),
    store: KeyStore = Depends(get_key_store),
):
    """
    Obtain content keys through the configured CDM

    - **pssh**: Base64 PSSH box; bare Widevine init data is wrapped into a box
    - **license_url**: License server the challenge is sent to
    - **headers**: Extra headers for the license request
    """
    raw = _decode_b64_field(request.pssh, "pssh")
    pssh_box = raw if pssh_box_to_data(raw) is not None else pssh_data_to_pssh_box(raw)

    app.state.active_tasks += 1
    try:
        keys = await cdm.extract_keys(encode_base64(pssh_box), str(request.license_url), request.headers)
    except Exception as e:
        logger.error(f"Key extraction failed: {e}")
        raise to_http_error(e)
    finally:
        app.state.active_tasks -= 1

    store.add(keys)
    return KeysResponse(keys=keys, formatted=format_keys(keys))


@app.get("/keys/export")
async def export_keys(
    kid: List[str] = Query(..., description="Key IDs to export (repeatable)"),
    fmt: KeyExportFormat = Query(KeyExportFormat.KID_KEY, alias="format", description="Output format"),
    store: KeyStore = Depends(get_key_store),
):
    """Render previously obtained keys for mp4decrypt and similar tools"""
    try:
        kids = [normalize_hex_id(k) for k in kid]
    except ValueError:
        raise HTTPException(status_code=400, detail="kid must be hex-encoded")

    keys = store.get_many(kids)
    if not keys:
        raise HTTPException(status_code=404, detail="No keys known for the requested KIDs")

    media_type = "application/json" if fmt == KeyExportFormat.JSON else "text/plain"
    return Response(content=format_keys(keys, fmt), media_type=media_type)


@app.post("/decrypt", response_model=DecryptResponse)
async def decrypt(
    request: DecryptRequest,
    decryptor_service: DecryptorService = Depends(get_decryptor),
    cache_service: LRUCache = Depends(get_cache),
):
    """
    Decrypt a single segment and report what was done

    - **url**: Encrypted media segment
    - **init_url**: Init segment of the same track
    - **key**: Hex content key, looked up by KID when omitted
    """
    start_time = time.time()
    app.state.active_tasks += 1
    try:
        data, info = await _decrypt_cached(
            decryptor_service,
            cache_service,
            str(request.url),
            str(request.init_url) if request.init_url else None,
            request.key,
            request.remove_protection_boxes,
        )
        return DecryptResponse(
            success=True,
            data_size=len(data),
            processing_time=time.time() - start_time,
            kid=info.default_kid,
            scheme=info.effective_scheme if info.is_encrypted else None,
        )
    except Exception as e:
        logger.error(f"Decryption failed: {e}")
        return DecryptResponse(success=False, error=str(e), processing_time=time.time() - start_time)
    finally:
        app.state.active_tasks -= 1


@app.get("/decrypt/direct")
async def decrypt_direct(
    url: str = Query(..., description="Segment URL"),
    init_url: str = Query(..., description="Init segment URL"),
    key: Optional[str] = Query(None, description="Hex-encoded key"),
    remove_boxes: bool = Query(False, description="Neutralize protection boxes"),
    download: bool = Query(False, description="Return as downloadable file"),
    decryptor_service: DecryptorService = Depends(get_decryptor),
    cache_service: LRUCache = Depends(get_cache),
):
    """Return the raw decrypted segment, for players"""
    app.state.active_tasks += 1
    try:
        data, _ = await _decrypt_cached(decryptor_service, cache_service, url, init_url, key, remove_boxes)
    except Exception as e:
        logger.error(f"Direct decryption failed: {e}")
        raise to_http_error(e)
    finally:
        app.state.active_tasks -= 1
    return _media_response(data, download)


@app.get("/decrypt/{encoded_base}/{template_path:path}")
async def decrypt_template(
    encoded_base: str,
    template_path: str,
    init: str = Query(..., description="Init segment path relative to the same base"),
    key: Optional[str] = Query(None, description="Hex-encoded key"),
    remove_boxes: bool = Query(False, description="Neutralize protection boxes"),
    decryptor_service: DecryptorService = Depends(get_decryptor),
    cache_service: LRUCache = Depends(get_cache),
):
    """
    Decrypt a segment addressed by a base64 base URL plus a template path,
    so a rewritten MPD can point its SegmentTemplate straight at this endpoint
    """
    app.state.active_tasks += 1
    try:
        url = compose_url_from_template(encoded_base, template_path)
        init_url = compose_url_from_template(encoded_base, init)
        data, _ = await _decrypt_cached(decryptor_service, cache_service, url, init_url, key, remove_boxes)
    except Exception as e:
        logger.error(f"Template decryption failed: {e}")
        raise to_http_error(e)
    finally:
        app.state.active_tasks -= 1
    return _media_response(data)


@app.post("/challenge/analyze")
async def challenge_analyze(request: ChallengeAnalyzeRequest):
    """Decode a Widevine license challenge (SignedMessage + LicenseRequest)"""
    return asdict(analyze_challenge(_decode_b64_field(request.challenge, "challenge")))


@app.post("/license/analyze")
async def license_analyze(request: LicenseAnalyzeRequest):
    """Decode a Widevine license response (SignedMessage + License)"""
    return asdict(analyze_license_response(_decode_b64_field(request.license, "license")))

