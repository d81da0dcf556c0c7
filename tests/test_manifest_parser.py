import pytest

from mediadrm.errors import ManifestParseError
from mediadrm.services.manifest_parser import (
    DashManifest,
    HlsManifest,
    ManifestType,
    MssManifest,
    detect_dash_drm,
    detect_hls_drm,
    detect_manifest_type,
    extract_hls_pssh,
    extract_pssh_from_manifest,
    generate_segment_urls,
    get_drm_type,
    manifest_base_url,
    mss_fragment_urls,
    parse_iso_duration,
    parse_m3u8,
    parse_manifest,
    parse_mpd,
    parse_smooth_streaming,
    resolve_template,
    resolve_url,
)

WV_PSSH = "AAAAOHBzc2gAAAAA7e+LqXnWSs6jyCfc1R0h7QAAABgSEAEjRWeJq83vASNFZ4mrze8="

MPD = """<?xml version="1.0" encoding="UTF-8"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" xmlns:cenc="urn:mpeg:cenc:2013"
     type="static" mediaPresentationDuration="PT8S" minBufferTime="PT2S">
  <BaseURL>https://cdn.example.com/content/</BaseURL>
  <Period id="p0">
    <AdaptationSet id="1" mimeType="video/mp4" codecs="avc1.64001f">
      <ContentProtection schemeIdUri="urn:mpeg:dash:mp4protection:2011" value="cenc"
                         cenc:default_KID="01234567-89ab-cdef-0123-456789abcdef"/>
      <ContentProtection schemeIdUri="urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed">
        <cenc:pssh>%s</cenc:pssh>
      </ContentProtection>
      <SegmentTemplate initialization="$RepresentationID$/init.mp4"
                       media="$RepresentationID$/seg-$Number%%05d$.m4s"
                       timescale="1000" duration="2000" startNumber="1"/>
      <Representation id="v1" bandwidth="800000" width="1280" height="720"/>
      <Representation id="v2" bandwidth="1600000" width="1920" height="1080">
        <BaseURL>hd/</BaseURL>
      </Representation>
    </AdaptationSet>
    <AdaptationSet id="2" mimeType="audio/mp4" lang="en">
      <SegmentTemplate initialization="audio/init.mp4" media="audio/$Time$.m4s" timescale="48000">
        <SegmentTimeline>
          <S t="0" d="96000" r="1"/>
          <S d="48000"/>
        </SegmentTimeline>
      </SegmentTemplate>
      <Representation id="a1" bandwidth="128000" codecs="mp4a.40.2"/>
    </AdaptationSet>
  </Period>
</MPD>
""" % WV_PSSH

HLS_MASTER = """#EXTM3U
#EXT-X-SESSION-KEY:METHOD=SAMPLE-AES,URI="data:text/plain;base64,%s",KEYFORMAT="urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed",KEYFORMATVERSIONS="1"
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",LANGUAGE="en",DEFAULT=YES,URI="audio/en.m3u8"
#EXT-X-STREAM-INF:BANDWIDTH=1280000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2",AUDIO="aud"
video/720p.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2560000,RESOLUTION=1920x1080
https://other.example.com/1080p.m3u8
""" % WV_PSSH

HLS_MEDIA = """#EXTM3U
#EXT-X-VERSION:6
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:42
#EXT-X-MAP:URI="init.mp4"
#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://key-id",KEYFORMAT="com.apple.streamingkeydelivery",KEYFORMATVERSIONS="1"
#EXTINF:6.0,first
seg1.m4s
#EXT-X-BYTERANGE:1000@0
#EXTINF:4.5,
seg2.m4s
#EXT-X-ENDLIST
"""

MSS = """<?xml version="1.0" encoding="utf-8"?>
<SmoothStreamingMedia MajorVersion="2" MinorVersion="0" Duration="40000000" TimeScale="10000000">
  <Protection>
    <ProtectionHeader SystemID="{9A04F079-9840-4286-AB92-E65BE0885F95}">PFdSTUhFQURFUj4=</ProtectionHeader>
  </Protection>
  <StreamIndex Type="video" Name="video" Url="QualityLevels({bitrate})/Fragments(video={start time})">
    <QualityLevel Index="0" Bitrate="1000000" FourCC="AVC1" MaxWidth="1280" MaxHeight="720" CodecPrivateData="0000000167"/>
    <c t="0" d="20000000"/>
    <c d="20000000"/>
  </StreamIndex>
</SmoothStreamingMedia>
"""


def test_parse_iso_duration():
    assert parse_iso_duration("PT1H2M3.5S") == 3723.5
    assert parse_iso_duration("P1DT1S") == 86401
    assert parse_iso_duration("PT0S") == 0
    assert parse_iso_duration("") is None
    assert parse_iso_duration("bogus") is None


@pytest.mark.parametrize(
    "base, relative, expected",
    [
        ("https://a.com/x/y.mpd", "seg.m4s", "https://a.com/x/seg.m4s"),
        ("https://a.com/x/", "/root.m4s", "https://a.com/root.m4s"),
        ("https://a.com/x/", "//cdn.com/s.m4s", "https://cdn.com/s.m4s"),
        ("https://a.com/x/", "http://b.com/s.m4s", "http://b.com/s.m4s"),
        ("", "seg.m4s", "seg.m4s"),
    ],
)
def test_resolve_url(base, relative, expected):
    assert resolve_url(base, relative) == expected


def test_parse_mpd_structure():
    mpd = parse_mpd(MPD)
    assert isinstance(mpd, DashManifest)
    assert mpd.mpd_type == "static"
    assert mpd.duration == 8
    assert mpd.min_buffer_time == 2
    assert mpd.base_url == "https://cdn.example.com/content/"

    period = mpd.periods[0]
    assert period.duration == 8
    video, audio = period.adaptation_sets
    assert video.content_type == "video"
    assert [r.id for r in video.representations] == ["v1", "v2"]
    assert video.representations[1].base_url == "https://cdn.example.com/content/hd/"
    assert video.representations[0].codecs == "avc1.64001f"
    assert audio.lang == "en"

    mp4protection, widevine = video.content_protection
    assert mp4protection.default_kid == "0123456789abcdef0123456789abcdef"
    assert widevine.system_id == "edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"
    assert widevine.pssh_base64 == WV_PSSH


def test_parse_mpd_invalid():
    with pytest.raises(ManifestParseError):
        parse_mpd("<MPD><unclosed></MPD>")
    with pytest.raises(ManifestParseError):
        parse_mpd("<NotMPD/>")


def test_number_template_expansion():
    rep = parse_mpd(MPD).periods[0].adaptation_sets[0].representations[0]
    urls = generate_segment_urls(rep, period_duration=8)
    assert urls.init == "https://cdn.example.com/content/v1/init.mp4"
    assert urls.segment_duration == 2
    assert [s.url for s in urls.segments] == [
        f"https://cdn.example.com/content/v1/seg-{n:05d}.m4s" for n in range(1, 5)
    ]


def test_number_template_without_duration_has_no_segments():
    rep = parse_mpd(MPD).periods[0].adaptation_sets[0].representations[0]
    urls = generate_segment_urls(rep)
    assert urls.segments == []
    assert urls.segment_duration == 2


def test_timeline_expansion():
    rep = parse_mpd(MPD).periods[0].adaptation_sets[1].representations[0]
    urls = generate_segment_urls(rep)
    assert [s.time for s in urls.segments] == [0, 96000, 192000]
    assert [s.duration for s in urls.segments] == [96000, 96000, 48000]
    assert urls.segments[2].url == "https://cdn.example.com/content/audio/192000.m4s"


def test_timeline_negative_repeat_fills_period():
    mpd = parse_mpd(
        """<MPD mediaPresentationDuration="PT10S"><Period>
        <AdaptationSet><Representation id="r">
          <SegmentTemplate media="$Time$.m4s" timescale="1">
            <SegmentTimeline><S t="0" d="2" r="-1"/></SegmentTimeline>
          </SegmentTemplate>
        </Representation></AdaptationSet></Period></MPD>"""
    )
    period = mpd.periods[0]
    rep = period.adaptation_sets[0].representations[0]
    urls = generate_segment_urls(rep, period_duration=period.duration)
    assert [s.url for s in urls.segments] == ["0.m4s", "2.m4s", "4.m4s", "6.m4s", "8.m4s"]


def test_resolve_template_identifiers():
    rep = parse_mpd(MPD).periods[0].adaptation_sets[0].representations[1]
    assert resolve_template("$RepresentationID$_$Bandwidth$_$Number%03d$_$$.m4s", rep, 7, 0) == "v2_1600000_007_$.m4s"


def test_segment_list_and_single_segment():
    mpd = parse_mpd(
        """<MPD><Period><AdaptationSet>
        <Representation id="list">
          <BaseURL>https://a.com/v/</BaseURL>
          <SegmentList>
            <Initialization sourceURL="init.mp4" range="0-999"/>
            <SegmentURL media="s1.m4s" mediaRange="1000-1999"/>
            <SegmentURL media="s2.m4s"/>
          </SegmentList>
        </Representation>
        <Representation id="single"><BaseURL>https://a.com/full.mp4</BaseURL></Representation>
        </AdaptationSet></Period></MPD>"""
    )
    list_rep, single_rep = mpd.periods[0].adaptation_sets[0].representations

    urls = generate_segment_urls(list_rep)
    assert urls.init == "https://a.com/v/init.mp4"
    assert urls.init_range == "0-999"
    assert [(s.url, s.byte_range) for s in urls.segments] == [
        ("https://a.com/v/s1.m4s", "1000-1999"),
        ("https://a.com/v/s2.m4s", None),
    ]

    assert [s.url for s in generate_segment_urls(single_rep).segments] == ["https://a.com/full.mp4"]


def test_parse_m3u8_master():
    playlist = parse_m3u8(HLS_MASTER, "https://cdn.example.com/hls/")
    assert isinstance(playlist, HlsManifest)
    assert playlist.is_master
    assert [(v.uri, v.bandwidth) for v in playlist.variants] == [
        ("https://cdn.example.com/hls/video/720p.m3u8", 1280000),
        ("https://other.example.com/1080p.m3u8", 2560000),
    ]
    assert playlist.variants[0].codecs == "avc1.4d401f,mp4a.40.2"
    assert playlist.variants[0].audio == "aud"
    assert playlist.media[0].uri == "https://cdn.example.com/hls/audio/en.m3u8"
    assert playlist.media[0].default
    assert playlist.session_keys[0].method == "SAMPLE-AES"


def test_parse_m3u8_media():
    playlist = parse_m3u8(HLS_MEDIA, "https://cdn.example.com/hls/")
    assert not playlist.is_master
    assert playlist.target_duration == 6
    assert playlist.media_sequence == 42
    assert playlist.map.uri == "https://cdn.example.com/hls/init.mp4"
    assert [(s.uri, s.duration) for s in playlist.segments] == [
        ("https://cdn.example.com/hls/seg1.m4s", 6.0),
        ("https://cdn.example.com/hls/seg2.m4s", 4.5),
    ]
    assert playlist.segments[0].title == "first"
    assert playlist.segments[1].byterange == "1000@0"
    assert playlist.total_duration == 10.5
    assert playlist.keys[0].keyformat == "com.apple.streamingkeydelivery"


def test_parse_m3u8_requires_header():
    with pytest.raises(ManifestParseError):
        parse_m3u8("#EXTINF:1,\nseg.ts\n")


def test_hls_drm_detection():
    assert detect_hls_drm(HLS_MEDIA)
    assert get_drm_type(HLS_MEDIA) == "FairPlay"
    assert get_drm_type(HLS_MASTER) == "Widevine"
    assert not detect_hls_drm("#EXTM3U\n#EXTINF:1,\nseg.ts\n")
    assert get_drm_type("#EXTM3U\n#EXT-X-FAXS-CM:abc\n") == "Flash Access"


def test_dash_drm_detection():
    assert detect_dash_drm(MPD)
    assert get_drm_type(MPD, ManifestType.DASH) == "DASH DRM"
    assert get_drm_type("<MPD/>", "dash") is None


def test_parse_smooth_streaming():
    mss = parse_smooth_streaming(MSS)
    assert isinstance(mss, MssManifest)
    assert mss.duration == 4
    assert mss.protection[0].system_id == "9a04f079-9840-4286-ab92-e65be0885f95"

    stream = mss.streams[0]
    assert stream.type == "video"
    assert stream.quality_levels[0].bitrate == 1000000
    assert stream.quality_levels[0].width == 1280
    assert [(c.time, c.duration) for c in stream.chunks] == [(0, 20000000), (20000000, 20000000)]
    assert mss_fragment_urls(stream, stream.quality_levels[0], "https://a.com/x.ism/") == [
        "https://a.com/x.ism/QualityLevels(1000000)/Fragments(video=0)",
        "https://a.com/x.ism/QualityLevels(1000000)/Fragments(video=20000000)",
    ]


@pytest.mark.parametrize(
    "content, url, expected",
    [
        (MPD, "", ManifestType.DASH),
        (HLS_MEDIA, "", ManifestType.HLS),
        (MSS, "", ManifestType.MSS),
        ("", "https://a.com/stream.mpd?token=1", ManifestType.DASH),
        ("", "https://a.com/x.ism/Manifest", ManifestType.MSS),
        ("plain text", "", ManifestType.UNKNOWN),
    ],
)
def test_detect_manifest_type(content, url, expected):
    assert detect_manifest_type(content, url) == expected


def test_manifest_base_url():
    assert manifest_base_url("https://a.com/path/master.m3u8?token=abc") == "https://a.com/path/"


def test_parse_manifest_dispatch():
    playlist = parse_manifest(HLS_MEDIA, "https://a.com/hls/index.m3u8")
    assert playlist.segments[0].uri == "https://a.com/hls/seg1.m4s"

    with pytest.raises(ManifestParseError):
        parse_manifest("not a manifest")


def test_extract_pssh_from_dash_fills_kid_from_mp4protection():
    found = extract_pssh_from_manifest(parse_mpd(MPD))
    assert len(found) == 1
    assert found[0].pssh_base64 == WV_PSSH
    assert found[0].kid == "0123456789abcdef0123456789abcdef"
    assert found[0].source == "dash-mpd"


def test_extract_pssh_from_hls_and_mss():
    hls = extract_pssh_from_manifest(parse_m3u8(HLS_MASTER))
    assert [p.pssh_base64 for p in hls] == [WV_PSSH]
    assert hls[0].system_id == "edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"

    mss = extract_pssh_from_manifest(parse_smooth_streaming(MSS))
    assert [(p.system_id, p.source) for p in mss] == [
        ("9a04f079-9840-4286-ab92-e65be0885f95", "mss-protection")
    ]


def test_widevine_sample_aes_ctr_key():
    playlist = parse_m3u8(
        "#EXTM3U\n"
        '#EXT-X-KEY:METHOD=SAMPLE-AES-CTR,KEYFORMAT="urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed",'
        'URI="data:text/plain;base64,AAA="\n'
        "#EXTINF:4,\nseg.m4s\n"
    )
    found = extract_hls_pssh(playlist)
    assert len(found) == 1
    assert found[0].system_id == "edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"
    assert found[0].pssh_base64 == "AAA="


def test_three_entry_timeline_with_padded_numbers():
    mpd = parse_mpd(
        """<MPD><Period><AdaptationSet><Representation id="r">
          <SegmentTemplate media="seg-$Number%05d$.m4s" startNumber="1">
            <SegmentTimeline><S t="0" d="1000"/><S d="1000"/><S d="1000"/></SegmentTimeline>
          </SegmentTemplate>
        </Representation></AdaptationSet></Period></MPD>"""
    )
    segments = generate_segment_urls(mpd.periods[0].adaptation_sets[0].representations[0]).segments
    assert [s.url for s in segments] == ["seg-00001.m4s", "seg-00002.m4s", "seg-00003.m4s"]
    assert [s.time for s in segments] == [0, 1000, 2000]


def test_hls_key_keeps_every_attribute():
    playlist = parse_m3u8(
        "#EXTM3U\n"
        '#EXT-X-SESSION-KEY:METHOD=SAMPLE-AES,URI="skd://key-1",KEYFORMAT="com.apple.streamingkeydelivery",'
        'KEYID=0x0123456789ABCDEF0123456789ABCDEF,CHARACTERISTICS="public.accessibility"\n'
        '#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin",IV=0x00000000000000000000000000000001\n'
        "#EXTINF:4,\n"
        "seg1.ts\n",
        "https://cdn.example.com/hls/",
    )
    session_key = playlist.session_keys[0]
    assert session_key.attributes["KEYID"] == "0x0123456789ABCDEF0123456789ABCDEF"
    assert session_key.attributes["CHARACTERISTICS"] == "public.accessibility"

    key = playlist.keys[0]
    assert key.uri == "https://cdn.example.com/hls/keys/k1.bin"
    assert key.attributes == {
        "METHOD": "AES-128",
        "URI": "keys/k1.bin",
        "IV": "0x00000000000000000000000000000001",
    }


def test_malformed_bandwidth_is_a_parse_error():
    with pytest.raises(ManifestParseError):
        parse_m3u8("#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=fast\nlow.m3u8\n")
