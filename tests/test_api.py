import base64
import os

import pytest
from fastapi.testclient import TestClient

from mediadrm import api
from mediadrm.errors import DownloadError
from mediadrm.models.schemas import ContentKey
from mediadrm.services.cache import LRUCache
from mediadrm.services.decryptor import DecryptorService
from mediadrm.services.widevine_proto import pssh_box_to_data

from mp4_builder import (
    KEY,
    KID,
    ctr_encrypt,
    fragment,
    init_segment,
    mdat_payloads,
    media_segment,
    pssh_box,
)
from test_manifest_parser import HLS_MEDIA, MPD
from test_widevine_proto import build_challenge, build_license

WV_DATA = b"\x12\x10" + bytes.fromhex(KID)
SAMPLE = os.urandom(64)
IV = os.urandom(8)

INIT_URL = "https://cdn.test/video/init.mp4"
SEGMENT_URL = "https://cdn.test/video/seg1.m4s"

RESOURCES = {
    INIT_URL: init_segment(pssh=[pssh_box(data=WV_DATA)]),
    SEGMENT_URL: media_segment(fragment([ctr_encrypt(bytes.fromhex(KEY), IV, SAMPLE)], [(IV, None)])),
    "https://cdn.test/hls/index.m3u8": HLS_MEDIA.encode(),
    "https://cdn.test/not-mp4": b"<html>not found</html>",
}


class StaticDecryptor(DecryptorService):
    """DecryptorService serving downloads from memory"""

    def __init__(self, resources, **kwargs):
        super().__init__(**kwargs)
        self.resources = resources
        self.fetched = []

    async def fetch(self, url, proxy=None, user_agent=None):
        self.fetched.append(url)
        if url not in self.resources:
            raise DownloadError(f"Failed to download {url}: 404")
        return self.resources[url]


class FakeCdm:
    def __init__(self):
        self.requests = []

    async def extract_keys(self, pssh_base64, license_url, headers=None):
        self.requests.append((pssh_base64, license_url, dict(headers or {})))
        return [ContentKey(kid=KID, key=KEY)]


@pytest.fixture
def services(monkeypatch):
    for name in ("decryptor", "cache", "key_store", "cdm_client"):
        monkeypatch.setattr(api, name, None)

    cache = LRUCache()
    decryptor = StaticDecryptor(RESOURCES, cache=cache)
    cdm = FakeCdm()
    api.init_services(decryptor, cache, cdm)
    return decryptor, cdm


@pytest.fixture
def client(services):
    return TestClient(api.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["cdm_configured"] is True
    assert body["active_tasks"] == 0


def test_uninitialized_services_return_503(monkeypatch):
    for name in ("decryptor", "cache", "key_store", "cdm_client"):
        monkeypatch.setattr(api, name, None)
    client = TestClient(api.app)
    assert client.post("/init/analyze", json={"url": INIT_URL}).status_code == 503
    response = client.post("/keys", json={"pssh": "AAAA", "license_url": "https://license.test/"})
    assert response.status_code == 503


def test_manifest_parse_content(client):
    response = client.post("/manifest/parse", json={"content": MPD})
    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "dash"
    assert body["drm_type"] == "DASH DRM"
    assert body["pssh"][0]["kid"] == KID
    assert body["manifest"]["periods"][0]["adaptation_sets"][0]["representations"][0]["id"] == "v1"


def test_manifest_parse_fetches_url(client, services):
    decryptor, _ = services
    response = client.post("/manifest/parse", json={"url": "https://cdn.test/hls/index.m3u8"})
    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "hls"
    assert body["drm_type"] == "FairPlay"
    assert body["manifest"]["segments"][0]["uri"] == "https://cdn.test/hls/seg1.m4s"
    assert decryptor.fetched == ["https://cdn.test/hls/index.m3u8"]


@pytest.mark.parametrize("payload", [{"content": "hello"}, {}])
def test_manifest_parse_rejects_bad_input(client, payload):
    assert client.post("/manifest/parse", json=payload).status_code == 400


def test_init_analyze(client):
    response = client.post("/init/analyze", json={"url": INIT_URL})
    assert response.status_code == 200
    body = response.json()
    assert body["is_encrypted"] is True
    assert body["scheme"] == "cenc"
    assert body["default_kid"] == KID
    assert body["pssh"][0]["system_name"] == "Widevine"
    assert base64.b64decode(body["pssh"][0]["data_base64"]) == WV_DATA


def test_init_analyze_errors(client):
    assert client.post("/init/analyze", json={"url": "https://cdn.test/missing"}).status_code == 502
    assert client.post("/init/analyze", json={"url": "https://cdn.test/not-mp4"}).status_code == 400


def test_decrypt_with_key_is_cached(client, services):
    decryptor, _ = services
    payload = {"url": SEGMENT_URL, "init_url": INIT_URL, "key": KEY}

    first = client.post("/decrypt", json=payload).json()
    second = client.post("/decrypt", json=payload).json()

    assert first["success"] is True
    assert first["data_size"] == len(RESOURCES[SEGMENT_URL])
    assert first["kid"] == KID
    assert first["scheme"] == "cenc"
    assert second["success"] is True
    assert decryptor.fetched.count(SEGMENT_URL) == 1
    assert api.app.state.cache_hits == 1
    assert api.app.state.cache_misses == 1


def test_decrypt_reports_failures(client):
    body = client.post("/decrypt", json={"url": SEGMENT_URL, "init_url": INIT_URL}).json()
    assert body["success"] is False
    assert KID in body["error"]

    body = client.post("/decrypt", json={"url": SEGMENT_URL, "key": KEY}).json()
    assert body["success"] is False
    assert "init_url" in body["error"]


def test_keys_then_decrypt_without_key(client, services):
    _, cdm = services
    response = client.post(
        "/keys",
        json={
            "pssh": base64.b64encode(WV_DATA).decode(),
            "license_url": "https://license.test/wv",
            "headers": {"Authorization": "Bearer t"},
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["keys"] == [{"kid": KID, "key": KEY, "type": "CONTENT", "security_level": None}]
    assert body["formatted"] == f"{KID}:{KEY}"

    pssh_b64, license_url, headers = cdm.requests[0]
    assert pssh_box_to_data(base64.b64decode(pssh_b64)) == WV_DATA
    assert license_url == "https://license.test/wv"
    assert headers == {"Authorization": "Bearer t"}

    decrypted = client.post("/decrypt", json={"url": SEGMENT_URL, "init_url": INIT_URL}).json()
    assert decrypted["success"] is True

    exported = client.get("/keys/export", params={"kid": KID, "format": "mp4decrypt"})
    assert exported.status_code == 200
    assert exported.text == f"--key {KID}:{KEY}"


def test_keys_rejects_invalid_base64(client):
    response = client.post("/keys", json={"pssh": "not base64!", "license_url": "https://license.test/"})
    assert response.status_code == 400


def test_export_unknown_kid(client):
    assert client.get("/keys/export", params={"kid": "ff" * 16}).status_code == 404


def test_decrypt_direct_returns_media(client):
    response = client.get(
        "/decrypt/direct", params={"url": SEGMENT_URL, "init_url": INIT_URL, "key": KEY, "download": True}
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "video/mp4"
    assert "attachment" in response.headers["content-disposition"]
    assert mdat_payloads(response.content) == [SAMPLE]


def test_decrypt_template_path(client):
    encoded = base64.urlsafe_b64encode(b"https://cdn.test/video/").decode().rstrip("=")
    response = client.get(f"/decrypt/{encoded}/seg1.m4s", params={"init": "init.mp4", "key": KEY})
    assert response.status_code == 200
    assert mdat_payloads(response.content) == [SAMPLE]


def test_decrypt_template_bad_base(client):
    # "__4" decodes to bytes that are not UTF-8
    response = client.get("/decrypt/__4/seg1.m4s", params={"init": "init.mp4", "key": KEY})
    assert response.status_code == 400


def test_challenge_and_license_analyze():
    client = TestClient(api.app)

    challenge = client.post("/challenge/analyze", json={"challenge": base64.b64encode(build_challenge()).decode()})
    assert challenge.status_code == 200
    assert challenge.json()["message_type"] == "LICENSE_REQUEST"
    assert challenge.json()["client_info"]["type"] == "DRM_DEVICE_CERTIFICATE"

    license_response = client.post("/license/analyze", json={"license": base64.b64encode(build_license()).decode()})
    assert license_response.json()["content_keys"] == 1

    assert client.post("/challenge/analyze", json={"challenge": "***"}).status_code == 400


def test_export_rejects_non_hex_kid(client):
    assert client.get("/keys/export", params={"kid": "not-a-kid"}).status_code == 400
