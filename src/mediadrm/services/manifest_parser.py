import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union
from urllib.parse import urljoin

from ..errors import ManifestParseError
from .mp4_parser import CLEARKEY_SYSTEM_ID, PLAYREADY_SYSTEM_ID, WIDEVINE_SYSTEM_ID

logger = logging.getLogger(__name__)

MP4_PROTECTION_SCHEME = "urn:mpeg:dash:mp4protection:2011"

MSS_DEFAULT_TIMESCALE = 10_000_000

HLS_ATTRIBUTE_RE = re.compile(r'([A-Z0-9_-]+)\s*=\s*(?:"([^"]*)"|([^,\s]*))', re.IGNORECASE)
TEMPLATE_RE = re.compile(r"\$(RepresentationID|Number|Bandwidth|Time)(?:%0?(\d+)d)?\$|\$\$")
ISO_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)

HLS_DRM_PATTERNS = [
    re.compile(r'#EXT-X-(?:SESSION-)?KEY:.*?URI="skd://'),
    re.compile(r'#EXT-X-(?:SESSION-)?KEY:.*?KEYFORMAT="com\.apple\.streamingkeydelivery"'),
    re.compile(r'#EXT-X-(?:SESSION-)?KEY:.*?KEYFORMAT="com\.microsoft\.playready"'),
    re.compile(r"#EXT-X-FAXS-CM:"),
    re.compile(r'#EXT-X-(?:SESSION-)?KEY:.*?KEYFORMAT="urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"', re.IGNORECASE),
    re.compile(r'#EXT-X-(?:SESSION-)?KEY:.*?KEYFORMAT="urn:uuid:9a04f079-9840-4286-ab92-e65be0885f95"', re.IGNORECASE),
]
DASH_DRM_PATTERN = re.compile(r"<ContentProtection[^>]*>", re.IGNORECASE)


class ManifestType(str, Enum):
    DASH = "dash"
    HLS = "hls"
    MSS = "mss"
    UNKNOWN = "unknown"


def _dashed(system_id: str) -> str:
    s = system_id
    return f"{s[:8]}-{s[8:12]}-{s[12:16]}-{s[16:20]}-{s[20:]}"


# ─── DASH ───────────────────────────────────────────────────────────


@dataclass
class ContentProtection:
    scheme_id_uri: str
    system_id: str
    default_kid: str = ""
    pssh_base64: str = ""


@dataclass
class TimelineEntry:
    t: Optional[int]
    d: int
    r: int = 0


@dataclass
class SegmentTemplate:
    initialization: str = ""
    media: str = ""
    timescale: int = 1
    duration: int = 0
    start_number: int = 1
    presentation_time_offset: int = 0
    timeline: Optional[List[TimelineEntry]] = None


@dataclass
class SegmentURL:
    media: str
    media_range: str = ""


@dataclass
class SegmentList:
    initialization: str = ""
    initialization_range: str = ""
    segments: List[SegmentURL] = field(default_factory=list)


@dataclass
class Representation:
    id: str
    bandwidth: int = 0
    width: int = 0
    height: int = 0
    codecs: str = ""
    mime_type: str = ""
    base_url: str = ""
    has_own_base_url: bool = False
    segment_template: Optional[SegmentTemplate] = None
    segment_list: Optional[SegmentList] = None
    content_protection: List[ContentProtection] = field(default_factory=list)


@dataclass
class AdaptationSet:
    id: str = ""
    content_type: str = ""
    mime_type: str = ""
    codecs: str = ""
    lang: str = ""
    base_url: str = ""
    content_protection: List[ContentProtection] = field(default_factory=list)
    representations: List[Representation] = field(default_factory=list)


@dataclass
class Period:
    id: str = ""
    duration: Optional[float] = None
    base_url: str = ""
    adaptation_sets: List[AdaptationSet] = field(default_factory=list)


@dataclass
class DashManifest:
    mpd_type: str = "static"
    duration: Optional[float] = None
    min_buffer_time: Optional[float] = None
    base_url: str = ""
    periods: List[Period] = field(default_factory=list)
    manifest_type: ManifestType = ManifestType.DASH


@dataclass
class Segment:
    url: str
    number: Optional[int] = None
    time: Optional[int] = None
    duration: Optional[int] = None
    byte_range: Optional[str] = None


@dataclass
class SegmentUrls:
    init: Optional[str] = None
    init_range: Optional[str] = None
    segments: List[Segment] = field(default_factory=list)
    segment_duration: Optional[float] = None


def resolve_url(base: str, relative: str) -> str:
    """Resolve a possibly relative URL; absolute, scheme-relative and root-relative forms are handled"""
    if not relative:
        return base
    if not base:
        return relative
    return urljoin(base, relative)


def parse_iso_duration(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 duration such as PT1H2M3.5S into seconds"""
    if not value:
        return None
    match = ISO_DURATION_RE.match(value.strip())
    if not match:
        logger.debug(f"Unsupported duration format: {value}")
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _attr(element: ET.Element, name: str, default: str = "") -> str:
    """Attribute by local name, ignoring any namespace prefix"""
    value = element.get(name)
    if value is not None:
        return value
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return default


def _int_attr(element: ET.Element, name: str, default: int = 0) -> int:
    raw = _attr(element, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ManifestParseError(f"Invalid integer {name}={raw!r} on <{_local(element.tag)}>")


def _base_url(element: ET.Element, parent: str) -> str:
    base = _child(element, "BaseURL")
    if base is None or not (base.text or "").strip():
        return parent
    return resolve_url(parent, base.text.strip())


def _system_id_from_scheme(scheme_id_uri: str) -> str:
    uri = scheme_id_uri.lower()
    if WIDEVINE_SYSTEM_ID[:8] in uri:
        return _dashed(WIDEVINE_SYSTEM_ID)
    if PLAYREADY_SYSTEM_ID[:8] in uri:
        return _dashed(PLAYREADY_SYSTEM_ID)
    if CLEARKEY_SYSTEM_ID[:8] in uri:
        return _dashed(CLEARKEY_SYSTEM_ID)
    if uri == MP4_PROTECTION_SCHEME:
        return "mp4protection"
    return uri.replace("urn:uuid:", "")


def _parse_content_protection(element: ET.Element) -> ContentProtection:
    scheme_id_uri = _attr(element, "schemeIdUri")
    pssh = _child(element, "pssh")
    return ContentProtection(
        scheme_id_uri=scheme_id_uri,
        system_id=_system_id_from_scheme(scheme_id_uri),
        default_kid=_attr(element, "default_KID").replace("-", "").lower(),
        pssh_base64=(pssh.text or "").strip() if pssh is not None else "",
    )


def _parse_segment_template(element: Optional[ET.Element]) -> Optional[SegmentTemplate]:
    if element is None:
        return None

    timeline = None
    timeline_el = _child(element, "SegmentTimeline")
    if timeline_el is not None:
        timeline = []
        for s in _children(timeline_el, "S"):
            timeline.append(
                TimelineEntry(
                    t=_int_attr(s, "t") if _attr(s, "t") else None,
                    d=_int_attr(s, "d"),
                    r=_int_attr(s, "r"),
                )
            )

    return SegmentTemplate(
        initialization=_attr(element, "initialization"),
        media=_attr(element, "media"),
        timescale=_int_attr(element, "timescale", 1) or 1,
        duration=_int_attr(element, "duration"),
        start_number=_int_attr(element, "startNumber", 1),
        presentation_time_offset=_int_attr(element, "presentationTimeOffset"),
        timeline=timeline,
    )


def _merge_templates(
    parent: Optional[SegmentTemplate], child: Optional[SegmentTemplate], child_el: Optional[ET.Element]
) -> Optional[SegmentTemplate]:
    """Representation-level template attributes override the AdaptationSet ones"""
    if child is None:
        return parent
    if parent is None or child_el is None:
        return child
    merged = SegmentTemplate(**vars(parent))
    for attr_name, field_name in (
        ("initialization", "initialization"),
        ("media", "media"),
        ("timescale", "timescale"),
        ("duration", "duration"),
        ("startNumber", "start_number"),
        ("presentationTimeOffset", "presentation_time_offset"),
    ):
        if _attr(child_el, attr_name):
            setattr(merged, field_name, getattr(child, field_name))
    if child.timeline is not None:
        merged.timeline = child.timeline
    return merged


def _parse_segment_list(element: Optional[ET.Element]) -> Optional[SegmentList]:
    if element is None:
        return None
    init = _child(element, "Initialization")
    return SegmentList(
        initialization=_attr(init, "sourceURL") if init is not None else "",
        initialization_range=_attr(init, "range") if init is not None else "",
        segments=[
            SegmentURL(
                media=_attr(s, "media") or _attr(s, "mediaURL"),
                media_range=_attr(s, "mediaRange"),
            )
            for s in _children(element, "SegmentURL")
        ],
    )


def _parse_representation(
    element: ET.Element, adaptation_set: AdaptationSet, inherited_template: Optional[SegmentTemplate]
) -> Representation:
    template_el = _child(element, "SegmentTemplate")
    return Representation(
        id=_attr(element, "id"),
        bandwidth=_int_attr(element, "bandwidth"),
        width=_int_attr(element, "width"),
        height=_int_attr(element, "height"),
        codecs=_attr(element, "codecs") or adaptation_set.codecs,
        mime_type=_attr(element, "mimeType") or adaptation_set.mime_type,
        base_url=_base_url(element, adaptation_set.base_url),
        has_own_base_url=_child(element, "BaseURL") is not None,
        segment_template=_merge_templates(
            inherited_template, _parse_segment_template(template_el), template_el
        ),
        segment_list=_parse_segment_list(_child(element, "SegmentList")),
        content_protection=[
            _parse_content_protection(cp) for cp in _children(element, "ContentProtection")
        ],
    )


def _parse_adaptation_set(element: ET.Element, parent_base_url: str) -> AdaptationSet:
    mime_type = _attr(element, "mimeType")
    adaptation_set = AdaptationSet(
        id=_attr(element, "id"),
        content_type=_attr(element, "contentType") or mime_type.split("/")[0],
        mime_type=mime_type,
        codecs=_attr(element, "codecs"),
        lang=_attr(element, "lang"),
        base_url=_base_url(element, parent_base_url),
        content_protection=[
            _parse_content_protection(cp) for cp in _children(element, "ContentProtection")
        ],
    )

    template = _parse_segment_template(_child(element, "SegmentTemplate"))
    for rep in _children(element, "Representation"):
        adaptation_set.representations.append(_parse_representation(rep, adaptation_set, template))

    return adaptation_set


def parse_mpd(xml_text: str, base_url: str = "") -> DashManifest:
    """
    Parse a DASH MPD.

    Args:
        xml_text: MPD document
        base_url: URL the MPD was fetched from, used to resolve BaseURL elements

    Raises:
        ManifestParseError: Invalid XML or no MPD root element
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ManifestParseError(f"Invalid MPD XML: {e}")

    if _local(root.tag) != "MPD":
        raise ManifestParseError(f"Invalid MPD: root element is <{_local(root.tag)}>")

    manifest = DashManifest(
        mpd_type=_attr(root, "type", "static"),
        duration=parse_iso_duration(_attr(root, "mediaPresentationDuration")),
        min_buffer_time=parse_iso_duration(_attr(root, "minBufferTime")),
        base_url=_base_url(root, base_url),
    )

    periods = _children(root, "Period")
    for period_el in periods:
        period = Period(
            id=_attr(period_el, "id"),
            duration=parse_iso_duration(_attr(period_el, "duration")),
            base_url=_base_url(period_el, manifest.base_url),
        )
        if period.duration is None and len(periods) == 1:
            period.duration = manifest.duration

        for as_el in _children(period_el, "AdaptationSet"):
            period.adaptation_sets.append(_parse_adaptation_set(as_el, period.base_url))
        manifest.periods.append(period)

    logger.debug(
        f"Parsed MPD: {len(manifest.periods)} periods, "
        f"{sum(len(p.adaptation_sets) for p in manifest.periods)} adaptation sets"
    )
    return manifest


def resolve_template(template: str, representation: Representation, number: int, time: int) -> str:
    """Expand $RepresentationID$, $Bandwidth$, $Number$ and $Time$ identifiers"""
    values = {
        "RepresentationID": representation.id,
        "Bandwidth": representation.bandwidth,
        "Number": number,
        "Time": time,
    }

    def replace(match: "re.Match") -> str:
        if match.group(0) == "$$":
            return "$"
        value = values[match.group(1)]
        width = match.group(2)
        if width and isinstance(value, int):
            return str(value).zfill(int(width))
        return str(value)

    return TEMPLATE_RE.sub(replace, template)


def _expand_timeline(
    template: SegmentTemplate, representation: Representation, period_duration: Optional[float]
) -> List[Segment]:
    segments: List[Segment] = []
    time = 0
    number = template.start_number
    timeline = template.timeline or []
    period_end = (
        template.presentation_time_offset + int(period_duration * template.timescale)
        if period_duration
        else None
    )

    for index, entry in enumerate(timeline):
        if entry.t is not None:
            time = entry.t

        repeat = entry.r
        if repeat < 0:
            # Repeat until the next entry's start, or the period end
            next_start = timeline[index + 1].t if index + 1 < len(timeline) else None
            end = next_start if next_start is not None else period_end
            repeat = math.ceil((end - time) / entry.d) - 1 if end is not None and entry.d else 0

        for _ in range(repeat + 1):
            segments.append(
                Segment(
                    url=resolve_template(template.media, representation, number, time),
                    number=number,
                    time=time,
                    duration=entry.d,
                )
            )
            time += entry.d
            number += 1

    return segments


def generate_segment_urls(
    representation: Representation, base_url: str = "", period_duration: Optional[float] = None
) -> SegmentUrls:
    """
    Concrete init and media segment URLs of a representation.

    Number-based templates without a timeline need the period duration to know
    the segment count; without it only segment_duration is filled in.
    """
    template = representation.segment_template
    segment_list = representation.segment_list
    rep_base = representation.base_url or base_url
    urls = SegmentUrls()

    if template:
        if template.initialization:
            urls.init = resolve_template(template.initialization, representation, 0, 0)

        if template.timeline is not None:
            urls.segments = _expand_timeline(template, representation, period_duration)
        elif template.duration > 0:
            urls.segment_duration = template.duration / template.timescale
            if period_duration:
                count = math.ceil(period_duration / urls.segment_duration)
                for i in range(count):
                    number = template.start_number + i
                    time = i * template.duration
                    urls.segments.append(
                        Segment(
                            url=resolve_template(template.media, representation, number, time),
                            number=number,
                            time=time,
                            duration=template.duration,
                        )
                    )
    elif segment_list:
        urls.init = segment_list.initialization or None
        urls.init_range = segment_list.initialization_range or None
        for seg in segment_list.segments:
            urls.segments.append(Segment(url=seg.media, byte_range=seg.media_range or None))
    elif representation.has_own_base_url:
        urls.segments.append(Segment(url=representation.base_url))

    if urls.init:
        urls.init = resolve_url(rep_base, urls.init)
    for seg in urls.segments:
        seg.url = resolve_url(rep_base, seg.url)

    return urls


# ─── HLS ────────────────────────────────────────────────────────────


@dataclass
class HlsVariant:
    uri: str
    bandwidth: int = 0
    resolution: str = ""
    codecs: str = ""
    audio: str = ""


@dataclass
class HlsMedia:
    type: str
    group_id: str = ""
    name: str = ""
    language: str = ""
    uri: str = ""
    default: bool = False


@dataclass
class HlsKey:
    method: str = ""
    uri: str = ""
    iv: str = ""
    keyformat: str = ""
    keyformatversions: str = ""
    # Every attribute of the tag as written, URI unresolved
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class HlsMap:
    uri: str
    byterange: str = ""


@dataclass
class HlsSegment:
    uri: str
    duration: float = 0.0
    title: str = ""
    byterange: str = ""


@dataclass
class HlsManifest:
    is_master: bool = False
    variants: List[HlsVariant] = field(default_factory=list)
    media: List[HlsMedia] = field(default_factory=list)
    segments: List[HlsSegment] = field(default_factory=list)
    keys: List[HlsKey] = field(default_factory=list)
    session_keys: List[HlsKey] = field(default_factory=list)
    map: Optional[HlsMap] = None
    target_duration: Optional[int] = None
    media_sequence: int = 0
    total_duration: float = 0.0
    manifest_type: ManifestType = ManifestType.HLS


def parse_attributes(text: str) -> Dict[str, str]:
    """Parse an HLS attribute list (KEY=VALUE or KEY="VALUE" pairs)"""
    return {
        m.group(1).upper(): m.group(2) if m.group(2) is not None else m.group(3)
        for m in HLS_ATTRIBUTE_RE.finditer(text)
    }


def _parse_key(attrs: Dict[str, str], base_url: str) -> HlsKey:
    uri = attrs.get("URI", "")
    return HlsKey(
        method=attrs.get("METHOD", ""),
        uri=resolve_url(base_url, uri) if uri else "",
        iv=attrs.get("IV", ""),
        keyformat=attrs.get("KEYFORMAT", ""),
        keyformatversions=attrs.get("KEYFORMATVERSIONS", ""),
        attributes=dict(attrs),
    )


def _playlist_int(line: str) -> int:
    try:
        return int(float(line.split(":", 1)[1]))
    except ValueError:
        raise ManifestParseError(f"Invalid playlist tag: {line}")


def _attribute_int(attrs: Dict[str, str], name: str, line: str) -> int:
    try:
        return int(attrs.get(name) or 0)
    except ValueError:
        raise ManifestParseError(f"Invalid {name} in playlist tag: {line}")


def parse_m3u8(text: str, base_url: str = "") -> HlsManifest:
    """
    Parse an HLS master or media playlist in one forward pass.

    Raises:
        ManifestParseError: The playlist does not start with #EXTM3U
    """
    lines = [line.strip() for line in text.lstrip("\ufeff").splitlines()]
    first = next((line for line in lines if line), "")
    if not first.startswith("#EXTM3U"):
        raise ManifestParseError("Invalid M3U8: missing #EXTM3U header")

    playlist = HlsManifest()
    duration = 0.0
    title = ""
    byterange = ""
    pending_variant: Optional[HlsVariant] = None

    for line in lines:
        if line.startswith("#EXT-X-STREAM-INF:"):
            playlist.is_master = True
            attrs = parse_attributes(line[len("#EXT-X-STREAM-INF:") :])
            pending_variant = HlsVariant(
                uri="",
                bandwidth=_attribute_int(attrs, "BANDWIDTH", line),
                resolution=attrs.get("RESOLUTION", ""),
                codecs=attrs.get("CODECS", ""),
                audio=attrs.get("AUDIO", ""),
            )
        elif pending_variant is not None and line and not line.startswith("#"):
            pending_variant.uri = resolve_url(base_url, line)
            playlist.variants.append(pending_variant)
            pending_variant = None
        elif line.startswith("#EXT-X-MEDIA:"):
            attrs = parse_attributes(line[len("#EXT-X-MEDIA:") :])
            playlist.media.append(
                HlsMedia(
                    type=attrs.get("TYPE", ""),
                    group_id=attrs.get("GROUP-ID", ""),
                    name=attrs.get("NAME", ""),
                    language=attrs.get("LANGUAGE", ""),
                    uri=resolve_url(base_url, attrs["URI"]) if attrs.get("URI") else "",
                    default=attrs.get("DEFAULT", "").upper() == "YES",
                )
            )
        elif line.startswith("#EXT-X-KEY:"):
            playlist.keys.append(_parse_key(parse_attributes(line[len("#EXT-X-KEY:") :]), base_url))
        elif line.startswith("#EXT-X-SESSION-KEY:"):
            playlist.session_keys.append(
                _parse_key(parse_attributes(line[len("#EXT-X-SESSION-KEY:") :]), base_url)
            )
        elif line.startswith("#EXT-X-MAP:"):
            attrs = parse_attributes(line[len("#EXT-X-MAP:") :])
            playlist.map = HlsMap(
                uri=resolve_url(base_url, attrs.get("URI", "")),
                byterange=attrs.get("BYTERANGE", ""),
            )
        elif line.startswith("#EXT-X-TARGETDURATION:"):
            playlist.target_duration = _playlist_int(line)
        elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
            playlist.media_sequence = _playlist_int(line)
        elif line.startswith("#EXT-X-BYTERANGE:"):
            byterange = line[len("#EXT-X-BYTERANGE:") :].strip()
        elif line.startswith("#EXTINF:"):
            value, _, title = line[len("#EXTINF:") :].partition(",")
            try:
                duration = float(value)
            except ValueError:
                duration = 0.0
        elif line and not line.startswith("#"):
            if duration > 0 or not playlist.is_master:
                playlist.segments.append(
                    HlsSegment(
                        uri=resolve_url(base_url, line),
                        duration=duration,
                        title=title,
                        byterange=byterange,
                    )
                )
                playlist.total_duration += duration
                duration = 0.0
                title = ""
                byterange = ""

    logger.debug(
        f"Parsed M3U8: master={playlist.is_master}, variants={len(playlist.variants)}, "
        f"segments={len(playlist.segments)}, keys={len(playlist.keys)}"
    )
    return playlist


@dataclass
class ManifestPssh:
    """Protection data found in a manifest, ready to hand to a CDM"""

    system_id: str
    pssh_base64: str
    source: str
    kid: Optional[str] = None


def extract_hls_pssh(playlist: HlsManifest) -> List[ManifestPssh]:
    """Widevine PSSH boxes carried in EXT-X-KEY / EXT-X-SESSION-KEY data URIs"""
    results: List[ManifestPssh] = []

    for key in playlist.keys + playlist.session_keys:
        if WIDEVINE_SYSTEM_ID[:8] not in key.keyformat.lower():
            continue
        if key.uri.startswith("data:"):
            _, sep, pssh_b64 = key.uri.partition("base64,")
            if not sep:
                continue
        else:
            pssh_b64 = key.uri
        if pssh_b64:
            results.append(
                ManifestPssh(system_id=_dashed(WIDEVINE_SYSTEM_ID), pssh_base64=pssh_b64, source="hls-key")
            )

    return results


def detect_hls_drm(text: str) -> bool:
    """True when a playlist signals FairPlay, PlayReady, Widevine or Flash Access keys"""
    return any(pattern.search(text) for pattern in HLS_DRM_PATTERNS)


def detect_dash_drm(text: str) -> bool:
    return bool(DASH_DRM_PATTERN.search(text))


def get_drm_type(text: str, kind: Union[ManifestType, str] = ManifestType.HLS) -> Optional[str]:
    """Name of the DRM signalled by a raw HLS or DASH manifest, or None"""
    if not text:
        return None

    if ManifestType(kind) == ManifestType.HLS:
        if 'KEYFORMAT="com.apple.streamingkeydelivery"' in text:
            return "FairPlay"
        if 'KEYFORMAT="com.microsoft.playready"' in text:
            return "PlayReady"
        if re.search(rf'KEYFORMAT="urn:uuid:{_dashed(WIDEVINE_SYSTEM_ID)}"', text, re.IGNORECASE):
            return "Widevine"
        if 'URI="skd://' in text:
            return "FairPlay"
        if "#EXT-X-FAXS-CM:" in text:
            return "Flash Access"
    elif ManifestType(kind) == ManifestType.DASH:
        if detect_dash_drm(text):
            return "DASH DRM"

    return None


# ─── Smooth Streaming ───────────────────────────────────────────────


@dataclass
class MssQualityLevel:
    index: int = 0
    bitrate: int = 0
    fourcc: str = ""
    width: int = 0
    height: int = 0
    codec_private_data: str = ""


@dataclass
class MssChunk:
    time: int
    duration: int


@dataclass
class MssStream:
    type: str = ""
    name: str = ""
    url: str = ""
    quality_levels: List[MssQualityLevel] = field(default_factory=list)
    chunks: List[MssChunk] = field(default_factory=list)


@dataclass
class MssProtection:
    system_id: str
    data: str


@dataclass
class MssManifest:
    duration: float = 0.0
    timescale: int = MSS_DEFAULT_TIMESCALE
    is_live: bool = False
    streams: List[MssStream] = field(default_factory=list)
    protection: List[MssProtection] = field(default_factory=list)
    manifest_type: ManifestType = ManifestType.MSS


def parse_smooth_streaming(xml_text: str, base_url: str = "") -> MssManifest:
    """
    Parse a Smooth Streaming client manifest.

    Raises:
        ManifestParseError: Invalid XML or no SmoothStreamingMedia root
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ManifestParseError(f"Invalid Smooth Streaming XML: {e}")

    if _local(root.tag) != "SmoothStreamingMedia":
        raise ManifestParseError("Invalid MSS manifest: no SmoothStreamingMedia element")

    timescale = _int_attr(root, "TimeScale", MSS_DEFAULT_TIMESCALE) or MSS_DEFAULT_TIMESCALE
    manifest = MssManifest(
        duration=_int_attr(root, "Duration") / timescale,
        timescale=timescale,
        is_live=_attr(root, "IsLive").upper() == "TRUE",
    )

    protection = _child(root, "Protection")
    if protection is not None:
        for header in _children(protection, "ProtectionHeader"):
            manifest.protection.append(
                MssProtection(
                    system_id=_attr(header, "SystemID").strip("{}").lower(),
                    data=(header.text or "").strip(),
                )
            )

    for stream_el in _children(root, "StreamIndex"):
        stream = MssStream(
            type=_attr(stream_el, "Type"),
            name=_attr(stream_el, "Name"),
            url=_attr(stream_el, "Url"),
        )
        for ql in _children(stream_el, "QualityLevel"):
            stream.quality_levels.append(
                MssQualityLevel(
                    index=_int_attr(ql, "Index"),
                    bitrate=_int_attr(ql, "Bitrate"),
                    fourcc=_attr(ql, "FourCC"),
                    width=_int_attr(ql, "MaxWidth"),
                    height=_int_attr(ql, "MaxHeight"),
                    codec_private_data=_attr(ql, "CodecPrivateData"),
                )
            )

        time = 0
        for c in _children(stream_el, "c"):
            if _attr(c, "t"):
                time = _int_attr(c, "t")
            d = _int_attr(c, "d")
            for _ in range(_int_attr(c, "r", 1)):
                stream.chunks.append(MssChunk(time=time, duration=d))
                time += d

        manifest.streams.append(stream)

    return manifest


def mss_fragment_urls(stream: MssStream, quality_level: MssQualityLevel, base_url: str = "") -> List[str]:
    """Fragment URLs of one stream/quality, from the StreamIndex Url template"""
    template = stream.url.replace("{bitrate}", str(quality_level.bitrate)).replace(
        "{Bitrate}", str(quality_level.bitrate)
    )
    return [
        resolve_url(base_url, template.replace("{start time}", str(c.time)).replace("{start_time}", str(c.time)))
        for c in stream.chunks
    ]


# ─── Dispatch ───────────────────────────────────────────────────────


Manifest = Union[DashManifest, HlsManifest, MssManifest]


def detect_manifest_type(content: str, url: str = "") -> ManifestType:
    """URL extension hints first, then content sniffing"""
    lower_url = (url or "").lower()
    if ".mpd" in lower_url:
        return ManifestType.DASH
    if ".m3u8" in lower_url:
        return ManifestType.HLS
    if ".ism" in lower_url or "manifest" in lower_url:
        return ManifestType.MSS

    trimmed = content.strip()
    if trimmed.startswith("#EXTM3U"):
        return ManifestType.HLS
    if trimmed.startswith("<?xml") or trimmed.startswith("<MPD"):
        return ManifestType.MSS if "SmoothStreamingMedia" in trimmed else ManifestType.DASH
    if "<SmoothStreamingMedia" in trimmed:
        return ManifestType.MSS
    return ManifestType.UNKNOWN


def manifest_base_url(url: str) -> str:
    """Directory of a manifest URL, without query or fragment"""
    return re.sub(r"/[^/]*$", "/", re.sub(r"[?#].*$", "", url))


def parse_manifest(content: str, url: str = "", base_url: Optional[str] = None) -> Manifest:
    """
    Detect and parse a DASH, HLS or Smooth Streaming manifest.

    Raises:
        ManifestParseError: Unknown format or malformed manifest
    """
    manifest_type = detect_manifest_type(content, url)
    effective_base = base_url or (manifest_base_url(url) if url else "")

    if manifest_type == ManifestType.DASH:
        return parse_mpd(content, effective_base)
    if manifest_type == ManifestType.HLS:
        return parse_m3u8(content, effective_base)
    if manifest_type == ManifestType.MSS:
        return parse_smooth_streaming(content, effective_base)
    raise ManifestParseError("Unrecognised manifest format")


def extract_pssh_from_manifest(manifest: Manifest) -> List[ManifestPssh]:
    """Normalize DASH, HLS and MSS protection data into one list"""
    results: List[ManifestPssh] = []

    if isinstance(manifest, DashManifest):
        seen = set()
        for period in manifest.periods:
            for adaptation_set in period.adaptation_sets:
                protections = list(adaptation_set.content_protection)
                for rep in adaptation_set.representations:
                    protections.extend(rep.content_protection)
                # mp4protection carries the KID, the DRM entries carry the PSSH
                default_kid = next((cp.default_kid for cp in protections if cp.default_kid), "")
                for cp in protections:
                    if not cp.pssh_base64 or (cp.system_id, cp.pssh_base64) in seen:
                        continue
                    seen.add((cp.system_id, cp.pssh_base64))
                    results.append(
                        ManifestPssh(
                            system_id=cp.system_id,
                            pssh_base64=cp.pssh_base64,
                            source="dash-mpd",
                            kid=cp.default_kid or default_kid or None,
                        )
                    )
    elif isinstance(manifest, HlsManifest):
        results.extend(extract_hls_pssh(manifest))
    elif isinstance(manifest, MssManifest):
        for protection in manifest.protection:
            results.append(
                ManifestPssh(system_id=protection.system_id, pssh_base64=protection.data, source="mss-protection")
            )

    return results
