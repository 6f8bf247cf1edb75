import re

import pytest

from naming import download_name, sanitize_label

SAFE = re.compile(r'^[A-Za-z0-9_.-]+$')


@pytest.mark.parametrize('label', [
    'My Song.wav',
    '../../etc/passwd',
    'Cool Video: Part 1?',
    'clip "quoted" <tag>.mp4',
    '.hidden',
    'a' * 200,
    'Café del Mar',
])
def test_sanitize_label_stays_inside_allow_list(label):
    result = sanitize_label(label)
    assert SAFE.match(result)
    assert not result.startswith('.')
    assert len(result) <= 50


def test_sanitize_label_falls_back_when_nothing_survives():
    assert sanitize_label('') == 'download'
    assert sanitize_label(None) == 'download'
    assert sanitize_label('日本語') == 'download'
    assert sanitize_label('///', fallback='video') == 'video'


def test_sanitize_label_drops_path_components():
    assert '/' not in sanitize_label('../../etc/passwd')
    assert sanitize_label('../../etc/passwd') == 'etc_passwd'


def test_download_name_for_transform():
    assert download_name('My Song.wav', 'mp3') == 'My_Song_converted.mp3'


def test_download_name_for_capture():
    name = download_name('Cool Video: Part 1?', 'mp4', suffix='abcd1234')
    assert name == 'Cool_Video_Part_1_abcd1234.mp4'


def test_download_name_with_unusable_label():
    assert download_name('', '.flac') == 'download_converted.flac'


def test_download_name_keeps_dots_in_titles():
    name = download_name('Mr. Bean Episode 1', 'mp4', suffix='abcd1234', strip_extension=False)
    assert name == 'Mr._Bean_Episode_1_abcd1234.mp4'
    assert download_name('v1.2 release notes', 'webm', suffix='ab', strip_extension=False) == 'v1.2_release_notes_ab.webm'
