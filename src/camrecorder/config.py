"""
Configuration module for Cam Recorder.
Loads settings from YAML file and provides typed configuration.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class SchedulerConfig:
    """Polling loops and concurrency cap."""
    check_interval: int = 300          # seconds between live checks
    upload_interval: int = 3600        # seconds between upload sweeps
    max_concurrent_recordings: int = 5
    run_on_start: bool = False         # Run both loops once right after start


@dataclass
class RecordingConfig:
    """Capture settings."""
    output_dir: str = "./recordings"
    quality: str = "best"
    max_duration_minutes: float = 120  # 0 = unlimited
    use_ytdlp: bool = True
    use_streamlink: bool = False       # Fallback tool
    ytdlp_path: str = "yt-dlp"
    streamlink_path: str = "streamlink"
    stop_grace_seconds: float = 1.0
    cookies_from_browser: str = ""     # e.g. "chrome", used when no stored cookies exist


@dataclass
class BrowserConfig:
    """Headless browser used for presence probes."""
    headless: bool = True
    timeout_seconds: int = 60
    user_agent: str = ""               # Empty = per-platform user agent
    settle_delay: float = 3.0          # seconds to let the player render after gates
    network_wait: float = 5.0          # seconds to collect manifest responses
    extract_stream_urls: bool = True
    screenshots: bool = False          # Screenshot on navigation failure
    screenshots_dir: str = "./data/screenshots"


@dataclass
class CookiesConfig:
    """Session cookie persistence."""
    dir: str = "./data/cookies"
    format: str = "json"               # json or netscape


@dataclass
class GofileConfig:
    token: str = ""


@dataclass
class MixdropConfig:
    email: str = ""
    api_key: str = ""


@dataclass
class UploadConfig:
    """Remote hosts and retry policy."""
    primary: str = "gofile"
    secondary: str = "mixdrop"         # Empty to disable
    mirror: bool = True                # Mirror to secondary after a primary success
    max_file_size_gb: float = 5.0
    max_attempts: int = 3
    retry_delay: float = 1.0
    gofile: GofileConfig = field(default_factory=GofileConfig)
    mixdrop: MixdropConfig = field(default_factory=MixdropConfig)


@dataclass
class MediaConfig:
    """Thumbnails and metadata via ffmpeg/ffprobe."""
    enabled: bool = True
    thumbnails_dir: str = "./data/thumbnails"
    thumbnail_count: int = 3
    thumbnail_width: int = 320
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/camrecorder.log"
    max_size_mb: int = 10
    backup_count: int = 5
    tool_output: bool = True           # Log capture tool lines at DEBUG


@dataclass
class StoreConfig:
    """Entity store settings."""
    path: str = "./data/store.json"


@dataclass
class Config:
    """Main configuration container."""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    cookies: CookiesConfig = field(default_factory=CookiesConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    platforms: Dict[str, dict] = field(default_factory=dict)

    def __post_init__(self):
        """Ensure directories exist."""
        Path(self.recording.output_dir).mkdir(parents=True, exist_ok=True)
        Path(self.cookies.dir).mkdir(parents=True, exist_ok=True)
        Path(self.logging.file).parent.mkdir(parents=True, exist_ok=True)
        Path(self.store.path).parent.mkdir(parents=True, exist_ok=True)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def _env_or(value: Optional[str], env_name: str) -> str:
    """Config value if set, else the environment variable, else empty."""
    if value:
        return str(value)
    return os.environ.get(env_name, "")


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is empty or a section has the wrong shape.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError("Configuration file is empty")
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping")

    def section(name: str) -> dict:
        value = data.get(name) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Section '{name}' must be a mapping")
        return value

    scheduler_data = section('scheduler')
    scheduler_config = SchedulerConfig(
        check_interval=max(1, as_int(scheduler_data.get('check_interval'), 300)),
        upload_interval=max(1, as_int(scheduler_data.get('upload_interval'), 3600)),
        max_concurrent_recordings=max(1, as_int(scheduler_data.get('max_concurrent_recordings'), 5)),
        run_on_start=as_bool(scheduler_data.get('run_on_start'), False)
    )

    recording_data = section('recording')
    recording_config = RecordingConfig(
        output_dir=recording_data.get('output_dir', './recordings'),
        quality=str(recording_data.get('quality', 'best')),
        max_duration_minutes=max(0.0, as_float(recording_data.get('max_duration_minutes'), 120)),
        use_ytdlp=as_bool(recording_data.get('use_ytdlp'), True),
        use_streamlink=as_bool(
            recording_data.get('use_streamlink', os.environ.get('USE_STREAMLINK')), False
        ),
        ytdlp_path=recording_data.get('ytdlp_path', 'yt-dlp'),
        streamlink_path=recording_data.get('streamlink_path', 'streamlink'),
        stop_grace_seconds=max(0.0, as_float(recording_data.get('stop_grace_seconds'), 1.0)),
        cookies_from_browser=recording_data.get('cookies_from_browser', '') or ''
    )

    browser_data = section('browser')
    browser_config = BrowserConfig(
        headless=as_bool(browser_data.get('headless'), True),
        timeout_seconds=max(1, as_int(browser_data.get('timeout_seconds'), 60)),
        user_agent=browser_data.get('user_agent', '') or '',
        settle_delay=max(0.0, as_float(browser_data.get('settle_delay'), 3.0)),
        network_wait=max(0.0, as_float(browser_data.get('network_wait'), 5.0)),
        extract_stream_urls=as_bool(browser_data.get('extract_stream_urls'), True),
        screenshots=as_bool(browser_data.get('screenshots'), False),
        screenshots_dir=browser_data.get('screenshots_dir', './data/screenshots')
    )

    cookies_data = section('cookies')
    cookie_format = str(cookies_data.get('format', 'json')).lower()
    if cookie_format not in ('json', 'netscape'):
        raise ValueError(f"cookies.format must be 'json' or 'netscape', got '{cookie_format}'")
    cookies_config = CookiesConfig(
        dir=cookies_data.get('dir', './data/cookies'),
        format=cookie_format
    )

    upload_data = section('upload')
    gofile_data = upload_data.get('gofile') or {}
    mixdrop_data = upload_data.get('mixdrop') or {}
    upload_config = UploadConfig(
        primary=str(upload_data.get('primary', 'gofile')).lower(),
        secondary=str(upload_data.get('secondary', 'mixdrop') or '').lower(),
        mirror=as_bool(upload_data.get('mirror'), True),
        max_file_size_gb=max(0.0, as_float(upload_data.get('max_file_size_gb'), 5.0)),
        max_attempts=max(1, as_int(upload_data.get('max_attempts'), 3)),
        retry_delay=max(0.0, as_float(upload_data.get('retry_delay'), 1.0)),
        gofile=GofileConfig(
            token=_env_or(gofile_data.get('token'), 'GOFILES_TOKEN')
        ),
        mixdrop=MixdropConfig(
            email=_env_or(mixdrop_data.get('email'), 'MIXDROP_EMAIL'),
            api_key=_env_or(mixdrop_data.get('api_key'), 'MIXDROP_API_KEY')
        )
    )

    media_data = section('media')
    media_config = MediaConfig(
        enabled=as_bool(media_data.get('enabled'), True),
        thumbnails_dir=media_data.get('thumbnails_dir', './data/thumbnails'),
        thumbnail_count=max(0, as_int(media_data.get('thumbnail_count'), 3)),
        thumbnail_width=max(16, as_int(media_data.get('thumbnail_width'), 320)),
        ffmpeg_path=media_data.get('ffmpeg_path', 'ffmpeg'),
        ffprobe_path=media_data.get('ffprobe_path', 'ffprobe')
    )

    logging_data = section('logging')
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/camrecorder.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
        tool_output=as_bool(logging_data.get('tool_output'), True)
    )

    store_data = section('store')
    store_config = StoreConfig(
        path=store_data.get('path', './data/store.json')
    )

    return Config(
        scheduler=scheduler_config,
        recording=recording_config,
        browser=browser_config,
        cookies=cookies_config,
        upload=upload_config,
        media=media_config,
        logging=logging_config,
        store=store_config,
        platforms=section('platforms')
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Cam Recorder Configuration

scheduler:
  check_interval: 300          # Seconds between live checks
  upload_interval: 3600        # Seconds between upload sweeps
  max_concurrent_recordings: 5
  run_on_start: true

recording:
  output_dir: ./recordings
  quality: best                # Format / quality selector passed to the capture tool
  max_duration_minutes: 120    # 0 = unlimited
  use_ytdlp: true
  use_streamlink: false        # Fallback when yt-dlp cannot be started
  stop_grace_seconds: 1
  cookies_from_browser: ""     # e.g. chrome; used when no stored cookies exist

browser:
  headless: true
  timeout_seconds: 60
  settle_delay: 3
  network_wait: 5
  extract_stream_urls: true
  screenshots: false
  screenshots_dir: ./data/screenshots

cookies:
  dir: ./data/cookies
  format: json                 # json or netscape

upload:
  primary: gofile
  secondary: mixdrop
  mirror: true                 # Also upload to secondary after primary success
  max_file_size_gb: 5
  max_attempts: 3
  retry_delay: 1
  gofile:
    token: ""                  # Or GOFILES_TOKEN env var
  mixdrop:
    email: ""                  # Or MIXDROP_EMAIL env var
    api_key: ""                # Or MIXDROP_API_KEY env var

media:
  enabled: true
  thumbnails_dir: ./data/thumbnails
  thumbnail_count: 3

logging:
  level: INFO                  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/camrecorder.log
  max_size_mb: 10
  backup_count: 5
  tool_output: true            # Capture tool output at DEBUG level

store:
  path: ./data/store.json

# Per-platform overrides, merged over the built-in table
platforms:
  chaturbate:
    ytdlp_flags: ["--hls-use-mpegts"]
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
