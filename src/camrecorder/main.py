"""
Cam Recorder - Main Orchestrator.

Wires every component from configuration:
1. Watch performers across cam platforms with a headless browser
2. Record live streams with yt-dlp / streamlink
3. Upload finished files to Gofile / Mixdrop
4. Publish Video entities in the JSON store
"""

import asyncio
import os
import signal
import sys

from .config import Config, load_config
from .detector import PresenceDetector
from .logger import get_logger, setup_logging
from .media import MediaInspector
from .platforms import build_platforms
from .recorder import build_capture_tools
from .recording_service import RecordingService
from .scheduler import Scheduler
from .session_store import CookieFormat, SessionStore
from .store import JsonEntityStore
from .uploader import GB, UploadPipeline, create_host


def _host_credentials(config: Config, name: str) -> dict:
    if name == 'gofile':
        return {'token': config.upload.gofile.token}
    if name == 'mixdrop':
        return {'email': config.upload.mixdrop.email, 'api_key': config.upload.mixdrop.api_key}
    return {}


class CamRecorderApp:
    """
    Main application: owns the store, detector, upload pipeline and scheduler.
    """

    def __init__(self, config: Config):
        """Build every component from configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.platforms = build_platforms(config.platforms)

        self.store = JsonEntityStore(config.store.path)

        self.sessions = SessionStore(
            cookies_dir=config.cookies.dir,
            default_format=CookieFormat(config.cookies.format)
        )

        self.detector = PresenceDetector(
            platforms=self.platforms,
            session_store=self.sessions,
            headless=config.browser.headless,
            timeout=config.browser.timeout_seconds,
            user_agent=config.browser.user_agent or None,
            settle_delay=config.browser.settle_delay,
            network_wait=config.browser.network_wait,
            extract_stream_urls=config.browser.extract_stream_urls,
            screenshots=config.browser.screenshots,
            screenshots_dir=config.browser.screenshots_dir
        )

        upload = config.upload
        secondary = None
        if upload.secondary and upload.secondary != upload.primary:
            secondary = create_host(upload.secondary, **_host_credentials(config, upload.secondary))
        self.pipeline = UploadPipeline(
            primary=create_host(upload.primary, **_host_credentials(config, upload.primary)),
            secondary=secondary,
            max_file_size=int(upload.max_file_size_gb * GB),
            max_attempts=upload.max_attempts,
            retry_delay=upload.retry_delay,
            mirror=upload.mirror
        )

        media = None
        if config.media.enabled:
            media = MediaInspector(
                thumbnails_dir=config.media.thumbnails_dir,
                width=config.media.thumbnail_width,
                ffmpeg_path=config.media.ffmpeg_path,
                ffprobe_path=config.media.ffprobe_path
            )

        recording = config.recording
        self.service = RecordingService(
            store=self.store,
            pipeline=self.pipeline,
            platforms=self.platforms,
            tools=build_capture_tools(
                use_ytdlp=recording.use_ytdlp,
                use_streamlink=recording.use_streamlink,
                ytdlp_path=recording.ytdlp_path,
                streamlink_path=recording.streamlink_path
            ),
            output_dir=recording.output_dir,
            quality=recording.quality,
            max_duration_minutes=recording.max_duration_minutes or None,
            grace_period=recording.stop_grace_seconds,
            session_store=self.sessions,
            cookies_from_browser=recording.cookies_from_browser,
            media=media,
            thumbnail_count=config.media.thumbnail_count,
            log_output=config.logging.tool_output
        )

        self.scheduler = Scheduler(
            store=self.store,
            detector=self.detector,
            service=self.service,
            max_concurrent=config.scheduler.max_concurrent_recordings,
            check_interval=config.scheduler.check_interval,
            upload_interval=config.scheduler.upload_interval,
            run_on_start=config.scheduler.run_on_start
        )

    async def start(self) -> None:
        """Run until SIGINT/SIGTERM."""
        self._logger.info("Starting Cam Recorder...")

        await self.store.load()
        recovered = await self.service.recover_interrupted()
        if recovered:
            self._logger.info(f"Recovered {recovered} interrupted recordings for upload")

        performers = await self.store.list_active_performers()
        self._logger.info(
            f"Monitoring {len(performers)} performers on "
            f"{len(self.platforms)} known platforms"
        )

        self.scheduler.start()

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            await stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self._cleanup()

    async def _cleanup(self) -> None:
        """Stop captures, then release the browser and HTTP session."""
        self._logger.info("Cleaning up...")

        await self.scheduler.stop()

        try:
            await asyncio.wait_for(self.detector.close(), timeout=10.0)
        except Exception as e:
            self._logger.warning(f"Error closing browser: {e}")

        try:
            await asyncio.wait_for(self.pipeline.close(), timeout=5.0)
        except Exception as e:
            self._logger.warning(f"Error closing upload session: {e}")

        self._logger.info("Cleanup complete")


async def main() -> int:
    """Main entry point."""
    config_path = os.environ.get('CAMRECORDER_CONFIG', 'config.yaml')
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except (ValueError, OSError) as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    if not (config.recording.use_ytdlp or config.recording.use_streamlink):
        print("Error: enable recording.use_ytdlp or recording.use_streamlink")
        return 1

    app = CamRecorderApp(config)
    try:
        await app.start()
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}", exc_info=True)
        raise
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
