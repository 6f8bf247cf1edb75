import pytest

from conftest import ffmpeg_available, make_tone
from prober import (
    InvalidSource, ProbeError, available_qualities, detect_platform, fetch_video_info,
    parse_probe_output, parse_renditions, probe, validate_url,
)

FFPROBE_JSON = {
    'format': {'duration': '10.000000', 'size': '1764044', 'bit_rate': '1411206', 'format_name': 'wav'},
    'streams': [
        {'codec_type': 'audio', 'codec_name': 'pcm_s16le', 'sample_rate': '44100',
         'channels': 2, 'channel_layout': 'stereo'},
    ],
}

YT_FORMATS = [
    {'format_id': '140', 'ext': 'm4a', 'vcodec': 'none', 'acodec': 'mp4a.40.2', 'abr': 129.5,
     'format_note': 'medium'},
    {'format_id': '18', 'ext': 'mp4', 'vcodec': 'avc1', 'acodec': 'mp4a', 'height': 360,
     'format_note': '360p', 'filesize': 1000},
    {'format_id': '137', 'ext': 'mp4', 'vcodec': 'avc1', 'acodec': 'none', 'height': 1080},
    {'format_id': 'sb0', 'ext': 'mhtml', 'vcodec': 'none', 'acodec': 'none'},
    {'ext': 'mp4'},
]


def test_parse_probe_output():
    result = parse_probe_output('/tmp/a.wav', FFPROBE_JSON)
    assert result.duration_seconds == 10.0
    assert result.size == 1764044
    assert result.codec == 'pcm_s16le'
    assert result.sample_rate == 44100
    assert result.channels == 2
    data = result.to_dict()
    assert data['sampleRate'] == 44100
    assert data['videoCodec'] is None


def test_parse_probe_output_tolerates_missing_fields():
    result = parse_probe_output('/tmp/a', {'format': {'duration': 'N/A'}})
    assert result.duration_seconds == 0.0
    assert result.codec == ''


def test_probe_missing_file(tmp_path):
    with pytest.raises(ProbeError):
        probe(str(tmp_path / 'nope.wav'), 'ffprobe')


@pytest.mark.skipif(not ffmpeg_available(), reason='ffmpeg/ffprobe not installed')
def test_probe_real_file(tmp_path):
    result = probe(make_tone(str(tmp_path / 'tone.wav'), duration=2))
    assert result.duration_seconds == pytest.approx(2.0, abs=0.1)
    assert result.channels == 2


def test_parse_renditions():
    renditions = parse_renditions(YT_FORMATS)
    assert [r.format_id for r in renditions] == ['140', '18', '137', 'sb0']
    audio, muxed, video_only, storyboard = renditions
    assert audio.has_audio and not audio.has_video and audio.audio_bitrate == 129.5
    assert muxed.has_audio and muxed.has_video and muxed.height == 360
    assert video_only.has_video and not video_only.has_audio
    assert video_only.quality_label == '1080p'
    assert not storyboard.has_audio and not storyboard.has_video


def test_available_qualities():
    assert available_qualities(parse_renditions(YT_FORMATS)) == ['360p', '1080p', 'Audio Only']


@pytest.mark.parametrize('url, platform', [
    ('https://www.youtube.com/watch?v=abc', 'YouTube'),
    ('https://youtu.be/abc', 'YouTube'),
    ('https://m.facebook.com/watch/?v=1', 'Facebook'),
    ('https://x.com/user/status/1', 'X/Twitter'),
    ('https://www.instagram.com/reel/abc/', 'Instagram'),
    ('https://notyoutube.com/watch?v=abc', None),
    ('https://example.com/youtube.com', None),
])
def test_detect_platform(url, platform):
    assert detect_platform(url) == platform


def test_validate_url():
    assert validate_url('https://youtu.be/abc')
    assert not validate_url('ftp://youtu.be/abc')
    assert not validate_url('')
    assert not validate_url(None)


def test_fetch_video_info_rejects_unsupported_platform(mocker):
    ydl = mocker.patch('prober.yt_dlp.YoutubeDL')
    with pytest.raises(InvalidSource):
        fetch_video_info('https://example.com/video')
    ydl.assert_not_called()


def test_fetch_video_info_wraps_extractor_errors(mocker):
    ydl = mocker.patch('prober.yt_dlp.YoutubeDL')
    ydl.return_value.__enter__.return_value.extract_info.side_effect = Exception('Video unavailable')
    with pytest.raises(InvalidSource, match='Video unavailable'):
        fetch_video_info('https://youtu.be/gone')


def test_fetch_video_info_rejects_playlists(mocker):
    ydl = mocker.patch('prober.yt_dlp.YoutubeDL')
    ydl.return_value.__enter__.return_value.extract_info.return_value = {'_type': 'playlist', 'entries': []}
    with pytest.raises(InvalidSource):
        fetch_video_info('https://www.youtube.com/playlist?list=abc')


def test_fetch_video_info(mocker):
    ydl = mocker.patch('prober.yt_dlp.YoutubeDL')
    ydl.return_value.__enter__.return_value.extract_info.return_value = {
        'title': 'A Video',
        'duration': 61.4,
        'uploader': 'Someone',
        'view_count': 12,
        'description': 'x' * 300,
        'formats': YT_FORMATS,
    }
    info = fetch_video_info('https://youtu.be/abc')
    assert info.title == 'A Video'
    assert info.platform == 'YouTube'
    assert len(info.renditions) == 4
    data = info.to_dict()
    assert data['duration'] == '61'
    assert data['viewCount'] == '12'
    assert data['description'].endswith('...')
    assert [f['format_id'] for f in data['formats']] == ['18', '137']
