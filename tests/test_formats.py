import pytest

from formats import (
    FORMAT_CONFIGS, OutputRequest, UnsupportedFormat, capabilities, get_format_config,
    is_supported_input, normalize_bitrate, optional_int, parse_quality,
)


def test_every_format_has_all_quality_tiers():
    for fmt, config in FORMAT_CONFIGS.items():
        assert set(config['quality']) == {'low', 'medium', 'high', 'lossless'}, fmt


def test_get_format_config_known_format():
    assert get_format_config('mp3', 'high')['codec'] == 'libmp3lame'
    assert get_format_config('MP3')['codec'] == 'libmp3lame'


@pytest.mark.parametrize('fmt, quality', [('xyz', 'high'), ('', 'high'), (None, 'high'), ('mp3', 'ultra')])
def test_get_format_config_rejects_unknown(fmt, quality):
    with pytest.raises(UnsupportedFormat):
        get_format_config(fmt, quality)


def test_parse_quality():
    assert parse_quality('720p') == 720
    assert parse_quality('1080') == 1080
    assert parse_quality('highest') is None
    assert parse_quality(None) is None
    with pytest.raises(UnsupportedFormat):
        parse_quality('best quality')


def test_normalize_bitrate():
    assert normalize_bitrate('192') == '192k'
    assert normalize_bitrate('256K') == '256k'
    assert normalize_bitrate('') is None
    with pytest.raises(UnsupportedFormat):
        normalize_bitrate('loud')


def test_optional_int():
    assert optional_int('44100', 'sample rate') == 44100
    assert optional_int(None, 'sample rate') is None
    with pytest.raises(UnsupportedFormat):
        optional_int('two', 'channel count')
    with pytest.raises(UnsupportedFormat):
        optional_int('0', 'channel count')


def test_is_supported_input():
    assert is_supported_input('song.MP3')
    assert is_supported_input('blob', 'audio/mpeg')
    assert not is_supported_input('notes.pdf', 'application/pdf')
    assert not is_supported_input('noextension')


def test_output_request_to_dict_drops_unset_fields():
    data = OutputRequest(format='wav', quality='low').to_dict()
    assert data == {'format': 'wav', 'quality': 'low', 'audio_only': False}


def test_capabilities_lists_everything():
    caps = capabilities()
    assert 'flac' in caps['output']
    assert caps['quality_table']['mp3']['high'] == '192k'
    assert 'audio' in caps['capture_qualities']
    assert caps['capture_formats'] == ['mp4', 'webm', 'mp3']
