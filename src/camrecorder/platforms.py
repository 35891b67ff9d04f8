"""
Supported streaming platforms.
Profile URL patterns, live/offline DOM rules and capture tool flags per site.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional
from urllib.parse import urlparse


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

PROBE_BROWSER = "browser"
PROBE_YTDLP = "ytdlp"


@dataclass
class PlatformConfig:
    """How to probe and capture one streaming site."""
    name: str
    base_url: str
    stream_url_pattern: str                  # {identifier} is replaced with the channel id
    positive_selectors: List[str] = field(default_factory=list)
    negative_selectors: List[str] = field(default_factory=list)
    ytdlp_flags: List[str] = field(default_factory=list)
    streamlink_flags: List[str] = field(default_factory=list)
    user_agent: str = DEFAULT_USER_AGENT
    cookies: bool = True                     # Persist and reuse session cookies
    alt_domains: List[str] = field(default_factory=list)
    probe: str = PROBE_BROWSER

    @property
    def domain(self) -> str:
        return urlparse(self.base_url).netloc

    def profile_url(self, channel_id: str) -> str:
        return self.stream_url_pattern.replace('{identifier}', channel_id)


DEFAULT_PLATFORMS: Dict[str, PlatformConfig] = {
    'chaturbate': PlatformConfig(
        name='Chaturbate',
        base_url='https://chaturbate.com',
        stream_url_pattern='https://chaturbate.com/{identifier}/',
        positive_selectors=['#still_video_object', 'video'],
        negative_selectors=['.offline_tipping'],
        alt_domains=['cht.xxx'],
    ),
    'stripchat': PlatformConfig(
        name='Stripchat',
        base_url='https://stripchat.com',
        stream_url_pattern='https://stripchat.com/{identifier}',
        positive_selectors=['video.video-player'],
        negative_selectors=['.offline-indicator'],
        alt_domains=['stripchat.global'],
    ),
    'bongacams': PlatformConfig(
        name='BongaCams',
        base_url='https://bongacams.com',
        stream_url_pattern='https://bongacams.com/{identifier}',
        positive_selectors=['.live-status.online', '.bc-video__player'],
        negative_selectors=['.live-status.offline'],
    ),
    'livejasmin': PlatformConfig(
        name='LiveJasmin',
        base_url='https://livejasmin.com',
        stream_url_pattern='https://livejasmin.com/en/chat/{identifier}',
        positive_selectors=['.video-container video', '.status-online'],
        negative_selectors=['.status-offline'],
    ),
    'myfreecams': PlatformConfig(
        name='MyFreeCams',
        base_url='https://myfreecams.com',
        stream_url_pattern='https://myfreecams.com/#/{identifier}',
        positive_selectors=['#mfc_player', '.model-status-online'],
        negative_selectors=['.model-status-offline'],
    ),
    'camsoda': PlatformConfig(
        name='Camsoda',
        base_url='https://www.camsoda.com',
        stream_url_pattern='https://www.camsoda.com/v/{identifier}',
        positive_selectors=['.stream-player video', '.statusbadge:has-text("LIVE")'],
        negative_selectors=['.statusbadge:has-text("OFFLINE")'],
    ),
    'youtube': PlatformConfig(
        name='YouTube',
        base_url='https://www.youtube.com',
        stream_url_pattern='https://www.youtube.com/{identifier}/live',
        alt_domains=['youtu.be'],
        probe=PROBE_YTDLP,
    ),
    'twitch': PlatformConfig(
        name='Twitch',
        base_url='https://www.twitch.tv',
        stream_url_pattern='https://www.twitch.tv/{identifier}',
        probe=PROBE_YTDLP,
    ),
}


def build_platforms(overrides: Optional[Dict[str, dict]] = None) -> Dict[str, PlatformConfig]:
    """
    Default platform table with config overrides merged in.

    An override for a known key replaces only the fields it names; an
    unknown key must carry at least ``name``, ``base_url`` and
    ``stream_url_pattern``.
    """
    platforms = {key: replace(cfg) for key, cfg in DEFAULT_PLATFORMS.items()}
    for key, values in (overrides or {}).items():
        key = key.lower()
        if key in platforms:
            platforms[key] = replace(platforms[key], **values)
        else:
            missing = [f for f in ('name', 'base_url', 'stream_url_pattern') if f not in values]
            if missing:
                raise ValueError(f"Platform '{key}' is missing fields: {', '.join(missing)}")
            platforms[key] = PlatformConfig(**values)
    return platforms


def identify_platform(
    url: str,
    platforms: Optional[Dict[str, PlatformConfig]] = None
) -> Optional[str]:
    """Resolve a profile URL to a platform key, mirror domains included."""
    platforms = platforms or DEFAULT_PLATFORMS
    host = urlparse(url if '://' in url else f"https://{url}").netloc.lower()
    if host.startswith('www.'):
        host = host[4:]

    for key, cfg in platforms.items():
        domains = [cfg.domain.lower().removeprefix('www.')] + cfg.alt_domains
        for domain in domains:
            if host == domain or host.endswith('.' + domain):
                return key
    return None


def resolve_platform(
    key: str,
    url: Optional[str],
    platforms: Dict[str, PlatformConfig]
) -> Optional[PlatformConfig]:
    """Platform for a binding: its key first, then the host of its URL."""
    platform = platforms.get(key.lower())
    if platform is None and url:
        found = identify_platform(url, platforms)
        platform = platforms.get(found) if found else None
    return platform
