import logging
import os
import time
import warnings
from contextlib import asynccontextmanager
from typing import Optional, Union

import psutil
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from .api import VERSION
from .api import app as api_app
from .api import init_services
from .services.cache import KeyStore, LRUCache
from .services.decryptor import DecryptorService
from .services.remote_cdm import CdrmClient, RemoteCdmClient

warnings.filterwarnings(
    "ignore",
    message="An HTTPS request is being sent through an HTTPS proxy",
    category=RuntimeWarning,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Configuration
MAX_CONCURRENT_DOWNLOADS = int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "10"))
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "1000"))
CACHE_TTL = int(os.getenv("CACHE_TTL", "300"))

REMOTE_CDM_URL = os.getenv("REMOTE_CDM_URL", "")
REMOTE_CDM_DEVICE = os.getenv("REMOTE_CDM_DEVICE", "default")
REMOTE_CDM_DEVICE_TYPE = os.getenv("REMOTE_CDM_DEVICE_TYPE", "ANDROID")
REMOTE_CDM_SECRET = os.getenv("REMOTE_CDM_SECRET", "")
CDRM_URL = os.getenv("CDRM_URL", "")
CDM_TIMEOUT = float(os.getenv("CDM_TIMEOUT", "30"))


def cdm_client_from_env() -> Optional[Union[CdrmClient, RemoteCdmClient]]:
    """CDRM client when CDRM_URL is set, else the session-based remote CDM, else None"""
    if CDRM_URL:
        return CdrmClient(CDRM_URL, timeout=CDM_TIMEOUT)
    if REMOTE_CDM_URL:
        return RemoteCdmClient(
            REMOTE_CDM_URL,
            secret=REMOTE_CDM_SECRET,
            device_name=REMOTE_CDM_DEVICE,
            device_type=REMOTE_CDM_DEVICE_TYPE,
            timeout=CDM_TIMEOUT,
        )
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan"""
    logger.info("Starting Media DRM API...")

    cache_service = LRUCache(max_size=CACHE_MAX_SIZE, ttl=CACHE_TTL)
    key_store = KeyStore(cache_service)
    decryptor = DecryptorService(
        max_concurrent_downloads=MAX_CONCURRENT_DOWNLOADS,
        cache=cache_service,
        key_store=key_store,
    )
    cdm = cdm_client_from_env()

    init_services(decryptor, cache_service, cdm, key_store)

    app.state.start_time = time.time()
    app.state.decryptor = decryptor
    app.state.cache = cache_service
    app.state.cdm = cdm

    logger.info(f"Initialized decryptor with {MAX_CONCURRENT_DOWNLOADS} concurrent downloads")
    logger.info(f"Cache enabled: {CACHE_MAX_SIZE} items, {CACHE_TTL}s TTL")
    logger.info(f"CDM: {type(cdm).__name__ if cdm else 'not configured'}")

    yield

    logger.info("Shutting down Media DRM API...")
    await decryptor.close()
    if cdm is not None:
        await cdm.aclose()
    logger.info("Cleanup complete")


app = FastAPI(
    title="Media DRM API",
    description="DASH/HLS/MSS manifest parsing, Widevine license tooling and CENC decryption",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.mount("/api", api_app)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Media DRM API",
        "version": VERSION,
        "endpoints": {
            "health": "/api/health",
            "manifest": "/api/manifest/parse",
            "init": "/api/init/analyze",
            "keys": "/api/keys",
            "keys_export": "/api/keys/export?kid=...&format=kid:key|mp4decrypt|json",
            "decrypt_json": "/api/decrypt",
            "decrypt_direct": "/api/decrypt/direct?url=...&init_url=...&key=...",
            "decrypt_template": "/api/decrypt/<base64_url>/<template_path>?init=...&key=...",
            "challenge": "/api/challenge/analyze",
            "license": "/api/license/analyze",
            "info": "/info",
            "stats": "/stats",
            "docs": "/docs",
        },
    }


@app.get("/info")
async def get_info():
    """Supported schemes and current configuration"""
    return {
        "schemes": ["cenc", "cens", "cbc1", "cbcs"],
        "manifests": ["dash", "hls", "mss"],
        "max_concurrent_downloads": MAX_CONCURRENT_DOWNLOADS,
        "cache_enabled": CACHE_MAX_SIZE > 0,
        "cache_size": CACHE_MAX_SIZE,
        "cache_ttl": CACHE_TTL,
        "cdm": {
            "configured": bool(CDRM_URL or REMOTE_CDM_URL),
            "type": "cdrm" if CDRM_URL else ("remote" if REMOTE_CDM_URL else None),
            "device": REMOTE_CDM_DEVICE if REMOTE_CDM_URL and not CDRM_URL else None,
            "timeout": CDM_TIMEOUT,
        },
        "supported_features": [
            "Full-sample and subsample encryption",
            "Pattern encryption (cens, cbcs)",
            "8-byte and 16-byte per-sample IVs, constant IVs",
            "Multiple moof/mdat pairs per segment",
            "Protection box removal",
            "Widevine challenge and license inspection",
            "HTTP/HTTPS/SOCKS proxy support",
        ],
    }


@app.get("/stats")
async def get_stats():
    """Get application statistics"""
    process = psutil.Process(os.getpid())
    memory_info = process.memory_info()

    cache_service = getattr(app.state, "cache", None)
    decryptor = getattr(app.state, "decryptor", None)

    cache_hits = getattr(api_app.state, "cache_hits", 0)
    cache_misses = getattr(api_app.state, "cache_misses", 0)
    total_requests = cache_hits + cache_misses

    return {
        "uptime": time.time() - getattr(app.state, "start_time", time.time()),
        "memory_usage_mb": memory_info.rss / 1024 / 1024,
        "cpu_percent": process.cpu_percent(),
        "active_tasks": getattr(api_app.state, "active_tasks", 0),
        "cache_stats": {
            "size": cache_service.size() if cache_service else 0,
            "max_size": CACHE_MAX_SIZE,
            "hits": cache_hits,
            "misses": cache_misses,
            "total_requests": total_requests,
            "hit_ratio": cache_hits / max(total_requests, 1),
        },
        "decryptor": {
            "max_concurrent": MAX_CONCURRENT_DOWNLOADS,
            "available_slots": decryptor.semaphore._value if decryptor else 0,
        },
    }


@app.get("/cache/clear")
async def clear_cache():
    """Clear the cache"""
    cache_service = getattr(app.state, "cache", None)
    if cache_service:
        cache_service.clear()
        return {"status": "success", "message": "Cache cleared"}
    return {"status": "error", "message": "Cache not available"}


@app.get("/cache/cleanup")
async def cleanup_cache():
    """Remove expired items from cache"""
    cache_service = getattr(app.state, "cache", None)
    if cache_service:
        removed = cache_service.cleanup_expired()
        return {
            "status": "success",
            "message": f"Removed {removed} expired items",
            "removed_count": removed,
        }
    return {"status": "error", "message": "Cache not available"}


def run():
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "7775"))
    workers = int(os.getenv("WORKERS", "1"))  # workers > 1 do not share caches or keys
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Workers: {workers}, Reload: {reload}")

    uvicorn.run(
        "mediadrm.main:app",
        host=host,
        port=port,
        workers=workers,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    run()
