"""
Recording service for Cam Recorder.
Turns a detected live stream into a Recording entity, drives the capture
through its lifecycle and publishes finished files as Videos.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .logger import get_performer_logger
from .media import MediaInspector
from .models import (
    Performer,
    PlatformBinding,
    Recording,
    RecordingStatus,
    UploadStatus,
    Video,
)
from .platforms import PlatformConfig, resolve_platform
from .recorder import (
    CaptureTool,
    RecordingOptions,
    RecordingProcess,
    build_output_path,
)
from .session_store import CookieFormat, SessionStore
from .store import EntityStore
from .uploader import HostUploadResult, UploadPipeline


SHUTDOWN_ERROR = "Force-terminated at shutdown"
MISSING_FILE_ERROR = "Local file not found"


@dataclass
class ActiveRecording:
    """A Recording entity paired with its running capture."""
    recording: Recording
    process: RecordingProcess
    performer: Performer
    binding: PlatformBinding

    @property
    def key(self) -> Tuple[str, str]:
        return (self.performer.id, self.binding.platform)


class RecordingService:
    """Recording lifecycle on top of the entity store."""

    def __init__(
        self,
        store: EntityStore,
        pipeline: UploadPipeline,
        platforms: dict,
        tools: Sequence[CaptureTool],
        output_dir: str = "./recordings",
        quality: str = "best",
        max_duration_minutes: Optional[float] = 120,
        grace_period: float = 1.0,
        session_store: Optional[SessionStore] = None,
        cookies_from_browser: str = "",
        media: Optional[MediaInspector] = None,
        thumbnail_count: int = 3,
        log_output: bool = True
    ):
        self.store = store
        self.pipeline = pipeline
        self.platforms = platforms
        self.tools = list(tools)
        self.output_dir = output_dir
        self.quality = quality
        self.max_duration_minutes = max_duration_minutes
        self.grace_period = grace_period
        self.session_store = session_store
        self.cookies_from_browser = cookies_from_browser
        self.media = media
        self.thumbnail_count = thumbnail_count
        self.log_output = log_output

        Path(output_dir).mkdir(parents=True, exist_ok=True)

    def _platform(self, key: str, url: Optional[str] = None) -> Optional[PlatformConfig]:
        return resolve_platform(key, url, self.platforms)

    async def _cookie_file(self, platform: Optional[PlatformConfig]) -> Optional[str]:
        """Netscape cookie file for the capture tool, refreshed from the JSON copy."""
        if not (platform and platform.cookies and self.session_store):
            return None

        domain = platform.domain
        if self.session_store.has(domain, CookieFormat.JSON):
            await self.session_store.convert(domain, CookieFormat.NETSCAPE)
        if self.session_store.has(domain, CookieFormat.NETSCAPE):
            return str(self.session_store.cookie_path(domain, CookieFormat.NETSCAPE))
        return None

    async def start_recording(
        self,
        performer: Performer,
        binding: PlatformBinding,
        stream_url: str
    ) -> Optional[ActiveRecording]:
        """
        Create a Recording and spawn its capture.

        Returns:
            The active recording, or None if the capture could not start
            (the Recording is then marked failed with the cause).
        """
        logger = get_performer_logger(performer.name, 'service')
        platform = self._platform(binding.platform, binding.url)

        recording = await self.store.create_recording(Recording(
            performer_id=performer.id,
            performer_name=performer.name,
            platform=binding.platform,
            stream_url=stream_url,
            source_url=binding.url or (platform.profile_url(binding.channel_id) if platform else ''),
            status=RecordingStatus.SCHEDULED,
        ))

        try:
            options = RecordingOptions(
                stream_url=stream_url,
                output_path=build_output_path(self.output_dir, performer.name, binding.platform),
                platform=platform,
                quality=self.quality,
                max_duration=self.max_duration_minutes,
                cookie_file=await self._cookie_file(platform),
                cookies_from_browser=self.cookies_from_browser or None,
                label=performer.name,
            )
            process = RecordingProcess(
                options, self.tools,
                grace_period=self.grace_period,
                log_output=self.log_output
            )
            await process.start()
        except Exception as e:
            logger.error(f"Failed to start recording on {binding.platform}: {e}")
            await self.store.update_recording(
                recording.id,
                status=RecordingStatus.FAILED,
                error=str(e) or type(e).__name__,
                end_time=datetime.now(),
            )
            return None

        try:
            recording = await self.store.update_recording(
                recording.id,
                status=RecordingStatus.RECORDING,
                start_time=process.started_at,
                file_path=options.output_path,
                capture_tool=process.tool_name,
            )
        except BaseException as e:
            # No caller owns the capture yet
            await process.stop()
            await self._fail_unowned(recording, e, logger)
            raise
        return ActiveRecording(recording=recording, process=process, performer=performer, binding=binding)

    async def _fail_unowned(self, recording: Recording, cause: BaseException, logger) -> None:
        try:
            await self.store.update_recording(
                recording.id,
                status=RecordingStatus.FAILED,
                error=str(cause) or type(cause).__name__,
                end_time=datetime.now(),
            )
        except Exception as e:
            logger.error(f"Could not mark recording {recording.id} failed: {e}")

    async def finish_recording(self, active: ActiveRecording, shutdown: bool = False) -> Recording:
        """
        Record the outcome of a finished capture.

        Args:
            active: Recording whose process has exited.
            shutdown: The capture was stopped by service shutdown.
        """
        logger = get_performer_logger(active.performer.name, 'service')
        result = await active.process.wait()

        fields = dict(
            end_time=result.ended_at,
            duration=result.duration,
            file_path=result.file_path,
            file_size=result.file_size,
        )

        if shutdown and result.force_killed:
            logger.warning(f"Recording on {active.binding.platform} force-terminated at shutdown")
            fields.update(status=RecordingStatus.FAILED, error=SHUTDOWN_ERROR)
        elif result.success:
            logger.info(
                f"Recording on {active.binding.platform} completed: "
                f"{result.duration_formatted}, {result.file_size} bytes"
            )
            fields.update(
                status=RecordingStatus.COMPLETED,
                upload_status=UploadStatus.PENDING,
                error=None,
            )
        else:
            logger.warning(f"Recording on {active.binding.platform} failed: {result.error}")
            fields.update(status=RecordingStatus.FAILED, error=result.error)

        return await self.store.update_recording(active.recording.id, **fields)

    async def recover_interrupted(self) -> int:
        """
        Close Recordings left scheduled/recording by a previous run.

        A non-empty output file (or its ``.part`` leftover) makes the
        Recording completed and queues it for upload; otherwise it fails.

        Returns:
            Number of recordings recovered as completed.
        """
        recovered = 0
        stale = (
            await self.store.list_recordings(RecordingStatus.SCHEDULED)
            + await self.store.list_recordings(RecordingStatus.RECORDING)
        )

        for recording in stale:
            logger = get_performer_logger(recording.performer_name or recording.performer_id, 'service')
            path = Path(recording.file_path) if recording.file_path else None
            if path and not path.exists():
                part = path.with_name(path.name + '.part')
                if part.exists():
                    part.replace(path)

            end_time = datetime.now()
            if path and path.exists() and path.stat().st_size > 0:
                # Last write is the best guess for when the capture died
                end_time = datetime.fromtimestamp(path.stat().st_mtime)
                duration = 0.0
                if recording.start_time:
                    duration = max(0.0, (end_time - recording.start_time).total_seconds())
                await self.store.update_recording(
                    recording.id,
                    status=RecordingStatus.COMPLETED,
                    upload_status=UploadStatus.PENDING,
                    file_size=path.stat().st_size,
                    end_time=end_time,
                    duration=duration,
                )
                recovered += 1
                logger.info(f"🔄 Recovered interrupted recording: {path.name}")
            else:
                await self.store.update_recording(
                    recording.id,
                    status=RecordingStatus.FAILED,
                    error="Interrupted by restart",
                    end_time=end_time,
                )
                logger.warning(f"Interrupted recording {recording.id} left no output")

        return recovered

    async def process_upload(self, recording: Recording) -> bool:
        """
        Upload a completed recording and publish it as a Video.

        The local file is deleted only after a host succeeded and the Video
        exists; on total failure it stays for the next sweep.

        Returns:
            True if the recording is now uploaded.
        """
        logger = get_performer_logger(recording.performer_name or recording.performer_id, 'service')

        if recording.video_id:
            # Video already published by an earlier sweep
            await self.store.update_recording(recording.id, upload_status=UploadStatus.COMPLETED)
            self._delete_local(recording.file_path, logger)
            return True

        if not recording.file_path or not Path(recording.file_path).exists():
            logger.error(f"Cannot upload recording {recording.id}: {MISSING_FILE_ERROR}")
            await self.store.update_recording(
                recording.id, upload_status=UploadStatus.FAILED, error=MISSING_FILE_ERROR
            )
            return False

        await self.store.update_recording(recording.id, upload_status=UploadStatus.UPLOADING)

        results = await self.pipeline.upload_to_all(recording.file_path)
        successes = [r for r in results if r.success]

        if not successes:
            last_error = results[-1].error if results else "No upload attempted"
            logger.error(f"Upload failed for {Path(recording.file_path).name}: {last_error}")
            await self.store.update_recording(
                recording.id, upload_status=UploadStatus.FAILED, error=last_error
            )
            return False

        video = await self._create_video(recording, successes)
        await self.store.update_recording(
            recording.id,
            upload_status=UploadStatus.COMPLETED,
            video_id=video.id,
            error=None,
        )
        logger.info(f"📺 Published video {video.id}: {video.title}")

        self._delete_local(recording.file_path, logger)
        return True

    async def _create_video(self, recording: Recording, successes: List[HostUploadResult]) -> Video:
        platform = self._platform(recording.platform, recording.source_url)
        platform_name = platform.name if platform else recording.platform
        name = recording.performer_name or recording.performer_id
        day = (recording.start_time or recording.created_at).strftime('%Y-%m-%d')

        primary_name = self.pipeline.primary.name
        ordered = sorted(successes, key=lambda r: r.host_name != primary_name)

        video = Video(
            title=f"{name} - {platform_name} - {day}",
            description=f"Recorded webcam video of {name} from {platform_name}",
            performer_id=recording.performer_id,
            platform=recording.platform,
            urls={r.host_name: r.url for r in ordered},
            content_ids={r.host_name: r.file_id for r in ordered if r.file_id},
            content_id=next((r.file_id for r in ordered if r.file_id), None),
            duration=recording.duration,
            tags=[recording.platform, 'webcam', 'recording'],
            recording_id=recording.id,
        )

        if self.media:
            video.thumbnails = await self.media.thumbnails(recording.file_path, self.thumbnail_count)
            meta = await self.media.metadata(recording.file_path)
            video.width = meta.get('width')
            video.height = meta.get('height')

        return await self.store.create_video(video)

    @staticmethod
    def _delete_local(file_path: Optional[str], logger) -> None:
        if not file_path:
            return
        try:
            Path(file_path).unlink(missing_ok=True)
            logger.info(f"Deleted local file: {Path(file_path).name}")
        except OSError as e:
            logger.warning(f"Failed to delete {file_path}: {e}")
