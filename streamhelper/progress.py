"""
Parses yt-dlp console output into progress observations.

yt-dlp prints several incompatible progress shapes depending on version and
download path (plain HTTP, HLS/DASH fragments, playlists, custom templates).
Each shape is handled by a small matcher object; `parse_progress` runs them in
priority order and never mutates anything outside its return value.
"""

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence

DOWNLOAD_MARKER = '[download]'

# Post-processing steps yt-dlp announces after the transfer itself.
STAGE_MAP = {
    'merger': 'Merging...',
    'extractaudio': 'Extracting Audio...',
    'embedthumbnail': 'Embedding...',
    'fixupm3u8': 'Fixing M3U8...',
    'fixupm4a': 'Fixing M4a...',
    'videoconvertor': 'Converting...',
    'metadata': 'Writing Metadata...',
}

_STAGE_RE = re.compile(r'^\[(\w+)\]')
_DESTINATION_RES = (
    re.compile(r'\[download\] Destination: (?P<path>.+)$'),
    re.compile(r'\[Merger\] Merging formats into "(?P<path>.+)"$'),
    re.compile(r'\[download\] (?P<path>.+) has already been downloaded'),
)

_PERCENT = r'\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%'
_SIZE = r'\s+of\s+~?\s*(?P<size>\d+(?:\.\d+)?\s*[KMGTP]?i?B)'
_RATE = r'(?:\s+at\s+(?P<speed>Unknown B/s|\S+/s)\s+ETA\s+(?P<eta>\S+)|\s+in\s+(?P<elapsed>[\d:]+)(?:\s+at\s+(?P<final_speed>\S+/s))?)?'


@dataclass(frozen=True)
class ProgressObservation:
    """A single progress reading extracted from process output."""
    percentage: Optional[float] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    size: Optional[str] = None
    stage: Optional[str] = None


def _clamp(value: float) -> float:
    return round(min(max(value, 0.0), 100.0), 1)


def format_bytes(num_bytes: float) -> str:
    """Formats a byte count the way yt-dlp does (binary units)."""
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.2f}{unit}" if unit != 'B' else f"{int(num_bytes)}B"
        num_bytes /= 1024
    return f"{num_bytes:.2f}TiB"


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class ProgressMatcher:
    """Base class for one progress line format."""
    name = 'base'
    pattern: Pattern[str]

    def try_parse(self, line: str) -> Optional[ProgressObservation]:
        match = self.pattern.search(line)
        if not match:
            return None
        try:
            return self._observe(match)
        except (ValueError, ZeroDivisionError):
            return None

    def _observe(self, match: 're.Match[str]') -> Optional[ProgressObservation]:
        raise NotImplementedError


class PercentMatcher(ProgressMatcher):
    """`[download]  12.3% of ~123.4MiB at 1.2MiB/s ETA 00:12`"""
    name = 'percent'
    pattern = re.compile(_PERCENT + _SIZE + _RATE)

    def _observe(self, match):
        speed = match.group('speed') or match.group('final_speed')
        eta = match.group('eta')
        if match.group('elapsed'):
            eta = '00:00'
        return ProgressObservation(
            percentage=_clamp(float(match.group('percent'))),
            speed=speed,
            eta=eta,
            size=match.group('size').replace(' ', ''),
        )


class FragmentPercentMatcher(PercentMatcher):
    """`[download]  12.3% of ~123.4MiB at 1.2MiB/s ETA 02:32 (frag 22/1344)`

    Fragment counting is a lower bound for segmented transfers, so the higher
    of the two readings is reported.
    """
    name = 'fragment-percent'
    pattern = re.compile(_PERCENT + _SIZE + _RATE + r'\s*\(frag\s+(?P<frag>\d+)/(?P<frags>\d+)\)')

    def _observe(self, match):
        observation = super()._observe(match)
        frag_percent = int(match.group('frag')) / int(match.group('frags')) * 100
        return ProgressObservation(
            percentage=_clamp(max(observation.percentage, frag_percent)),
            speed=observation.speed,
            eta=observation.eta,
            size=observation.size,
        )


class FragmentCountMatcher(ProgressMatcher):
    """`[download] Downloading item 12 of 445` / `[download] Downloading fragment 3 of 40`"""
    name = 'fragment-count'
    pattern = re.compile(r'\[download\]\s+Downloading\s+(?:item|fragment)\s+(?P<current>\d+)\s+of\s+(?P<total>\d+)')

    def _observe(self, match):
        return ProgressObservation(percentage=_clamp(int(match.group('current')) / int(match.group('total')) * 100))


class LegacyBytesMatcher(ProgressMatcher):
    """`download:123456/1234567 1.2MiB/s 123` from a `--progress-template`."""
    name = 'legacy-bytes'
    pattern = re.compile(r'download:(?P<downloaded>\d+)/(?P<total>\d+)\s+(?P<speed>[\d.]+\s*[KMGT]?i?B/s)\s+(?P<eta>\d+)')

    def _observe(self, match):
        total = int(match.group('total'))
        return ProgressObservation(
            percentage=_clamp(int(match.group('downloaded')) / total * 100),
            speed=match.group('speed'),
            eta=format_duration(int(match.group('eta'))),
            size=format_bytes(total),
        )


# Order matters: the first matcher that accepts a line wins for that line.
DEFAULT_MATCHERS: Sequence[ProgressMatcher] = (
    FragmentPercentMatcher(),
    PercentMatcher(),
    FragmentCountMatcher(),
    LegacyBytesMatcher(),
)


def detect_stage(line: str) -> Optional[str]:
    """Returns a display label if the line announces a post-processing step."""
    match = _STAGE_RE.match(line)
    if match:
        return STAGE_MAP.get(match.group(1).lower())
    return None


def extract_destination(line: str) -> Optional[str]:
    """Returns the output file yt-dlp says it is writing, if the line names one."""
    for regex in _DESTINATION_RES:
        match = regex.search(line.strip())
        if match:
            return match.group('path').strip()
    return None


def parse_progress(text: str, matchers: Sequence[ProgressMatcher] = DEFAULT_MATCHERS) -> Optional[ProgressObservation]:
    """
    Extracts at most one progress observation from a chunk of output.

    The reported percentage is the highest reading found anywhere in the
    chunk. Speed, ETA and size come from the last line that reports them.
    A chunk that matches nothing yields `None` unless it carries a
    `[download]` marker or a post-processing stage, in which case the
    observation has no percentage.

    Args:
        text: Raw output, possibly several lines.
        matchers: Matchers to try, in priority order.

    Returns:
        A ProgressObservation, or None if the chunk carried no progress signal.
    """
    percentage: Optional[float] = None
    speed = eta = size = stage = None
    has_marker = False

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if DOWNLOAD_MARKER in line:
            has_marker = True
        stage = detect_stage(line) or stage

        for matcher in matchers:
            observation = matcher.try_parse(line)
            if observation is None:
                continue
            if observation.percentage is not None and (percentage is None or observation.percentage > percentage):
                percentage = observation.percentage
            speed = observation.speed or speed
            eta = observation.eta or eta
            size = observation.size or size
            break

    if percentage is None and not has_marker and stage is None:
        return None
    return ProgressObservation(percentage=percentage, speed=speed, eta=eta, size=size, stage=stage)
