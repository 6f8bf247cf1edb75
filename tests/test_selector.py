import pytest

from formats import OutputRequest, UnsupportedFormat
from prober import Rendition
from selector import NoRenditionAvailable, select_rendition


def av(format_id, height, abr=128.0):
    return Rendition(format_id=format_id, height=height, has_audio=True, has_video=True, audio_bitrate=abr)


def audio(format_id, abr):
    return Rendition(format_id=format_id, has_audio=True, audio_bitrate=abr)


def video(format_id, height):
    return Rendition(format_id=format_id, height=height, has_video=True)


@pytest.fixture()
def ladder():
    return [av('1080', 1080), av('720', 720), av('360', 360)]


def test_exact_target_height(ladder):
    assert select_rendition(ladder, OutputRequest(format='mp4', quality='720p')).format_id == '720'


def test_target_above_everything_falls_back_to_tallest(ladder):
    assert select_rendition(ladder, OutputRequest(format='mp4', quality='2160p')).format_id == '1080'


def test_target_between_heights_picks_next_lower(ladder):
    assert select_rendition(ladder, OutputRequest(format='mp4', quality='480p')).format_id == '360'


def test_target_below_everything_falls_back_to_tallest(ladder):
    assert select_rendition(ladder, OutputRequest(format='mp4', quality='144p')).format_id == '1080'


def test_highest(ladder):
    assert select_rendition(ladder, OutputRequest(format='mp4', quality='highest')).format_id == '1080'


def test_explicit_resolution_wins_over_quality(ladder):
    request = OutputRequest(format='mp4', quality='highest', resolution=360)
    assert select_rendition(ladder, request).format_id == '360'


def test_audio_only_picks_highest_bitrate():
    renditions = [audio('a128', 128), audio('a256', 256)]
    assert select_rendition(renditions, OutputRequest(format='mp3', audio_only=True)).format_id == 'a256'


def test_audio_quality_label_means_audio_only():
    renditions = [av('720', 720, abr=96), audio('a160', 160)]
    assert select_rendition(renditions, OutputRequest(format='mp3', quality='audio')).format_id == 'a160'


def test_audio_only_falls_back_to_muxed_rendition():
    renditions = [video('v1080', 1080), av('720', 720, abr=96), av('480', 480, abr=128)]
    assert select_rendition(renditions, OutputRequest(format='mp3', audio_only=True)).format_id == '480'


def test_ties_go_to_first_seen():
    renditions = [av('first', 720), av('second', 720)]
    assert select_rendition(renditions, OutputRequest(format='mp4', quality='highest')).format_id == 'first'
    renditions = [audio('first', 128), audio('second', 128)]
    assert select_rendition(renditions, OutputRequest(format='mp3', audio_only=True)).format_id == 'first'


def test_video_ignored_when_it_has_no_audio():
    renditions = [video('v1080', 1080), av('480', 480)]
    assert select_rendition(renditions, OutputRequest(format='mp4', quality='highest')).format_id == '480'


def test_falls_back_to_first_audio_rendition():
    renditions = [video('v1080', 1080), audio('a64', 64), audio('a128', 128)]
    assert select_rendition(renditions, OutputRequest(format='mp4', quality='720p')).format_id == 'a64'


def test_nothing_usable_raises():
    with pytest.raises(NoRenditionAvailable):
        select_rendition([video('v1080', 1080)], OutputRequest(format='mp4', quality='highest'))
    with pytest.raises(NoRenditionAvailable):
        select_rendition([], OutputRequest(format='mp3', audio_only=True))


def test_unknown_quality_label_raises(ladder):
    with pytest.raises(UnsupportedFormat):
        select_rendition(ladder, OutputRequest(format='mp4', quality='ultra'))
