"""
Rendition selection for remote captures.

Pure functions: given the renditions the extractor reported and the
client's request, pick exactly one. Ties always go to the rendition seen
first so the same input list always yields the same choice.
"""
from typing import List, Optional

from formats import OutputRequest, parse_quality
from prober import Rendition


class NoRenditionAvailable(LookupError):
    """Nothing in the rendition list can satisfy the request."""


def _first_max(candidates: List[Rendition], key) -> Optional[Rendition]:
    # max() keeps the first of equal elements, which is the tie-break we want
    return max(candidates, key=key) if candidates else None


def wants_audio_only(request: OutputRequest) -> bool:
    return request.audio_only or request.quality == 'audio'


def target_height(request: OutputRequest) -> Optional[int]:
    if request.resolution:
        return request.resolution
    return parse_quality(request.quality)


def select_rendition(renditions: List[Rendition], request: OutputRequest) -> Rendition:
    """
    Pick one rendition to capture.

    Policy, in order:
      1. audio-only requests take the audio-only rendition with the highest
         audio bitrate, else the highest-bitrate rendition with any audio.
      2. otherwise, among audio+video renditions: the tallest for 'highest',
         or the tallest not above the target height, falling back to the
         tallest overall when nothing fits under the target.
      3. failing that, the first rendition that carries audio.

    Raises:
        NoRenditionAvailable: if every fallback comes up empty.
    """
    audio_capable = [r for r in renditions if r.has_audio]

    if wants_audio_only(request):
        audio_only = [r for r in audio_capable if not r.has_video]
        chosen = _first_max(audio_only, key=lambda r: r.audio_bitrate)
        if chosen is None:
            chosen = _first_max(audio_capable, key=lambda r: r.audio_bitrate)
        if chosen is None:
            raise NoRenditionAvailable('No audio rendition available')
        return chosen

    muxed = [r for r in audio_capable if r.has_video]
    height = target_height(request)
    if height is None:
        chosen = _first_max(muxed, key=lambda r: r.height)
    else:
        fitting = [r for r in muxed if r.height <= height]
        chosen = _first_max(fitting, key=lambda r: r.height) or _first_max(muxed, key=lambda r: r.height)

    if chosen is None and audio_capable:
        chosen = audio_capable[0]
    if chosen is None:
        raise NoRenditionAvailable('No downloadable rendition available')
    return chosen
