"""
Scheduler for Cam Recorder.
Two periodic loops: live checks that start captures under a global
concurrency cap, and upload sweeps for finished recordings.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .detector import PresenceDetector
from .logger import get_logger, get_performer_logger
from .models import Performer, PlatformBinding, RecordingStatus
from .recording_service import ActiveRecording, RecordingService
from .store import EntityStore


PairKey = Tuple[str, str]


@dataclass
class CheckStreamsResult:
    """Summary of one live-check cycle."""
    started: int = 0
    checked: int = 0
    total_performers: int = 0
    skipped_reason: Optional[str] = None


@dataclass
class CheckUploadsResult:
    """Summary of one upload sweep."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class SchedulerStatus:
    """Operational snapshot for an operator console."""
    running: bool
    active_count: int
    active_recordings: List[str]
    last_stream_check: Optional[datetime]
    last_upload_check: Optional[datetime]
    check_interval: int
    upload_interval: int
    max_concurrent: int
    tasks: Dict[str, bool] = field(default_factory=dict)


class Scheduler:
    """
    Owns the live-check and upload loops and every active capture.

    The active-recording map (and with it the running count and the
    ``(performer, platform)`` in-progress set) is guarded by one lock.
    Each loop body has its own lock so ticks of the same loop never overlap.
    """

    def __init__(
        self,
        store: EntityStore,
        detector: PresenceDetector,
        service: RecordingService,
        max_concurrent: int = 5,
        check_interval: int = 300,
        upload_interval: int = 3600,
        run_on_start: bool = False
    ):
        self.store = store
        self.detector = detector
        self.service = service
        self.max_concurrent = max_concurrent
        self.check_interval = check_interval
        self.upload_interval = upload_interval
        self.run_on_start = run_on_start

        self._logger = get_logger('scheduler')
        self._running = False
        self._shutting_down = False

        self._state_lock = asyncio.Lock()
        self._active: Dict[PairKey, ActiveRecording] = {}
        self._reserved: Set[PairKey] = set()
        self._watchers: Dict[PairKey, asyncio.Task] = {}

        self._streams_lock = asyncio.Lock()
        self._uploads_lock = asyncio.Lock()
        self._streams_task: Optional[asyncio.Task] = None
        self._uploads_task: Optional[asyncio.Task] = None

        self.last_stream_check: Optional[datetime] = None
        self.last_upload_check: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._active) + len(self._reserved)

    def start(self) -> None:
        """Start both periodic loops."""
        if self._running:
            return
        self._running = True
        self._shutting_down = False
        self._streams_task = asyncio.create_task(
            self._loop(self.check_streams, self.check_interval, 'live check')
        )
        self._uploads_task = asyncio.create_task(
            self._loop(self.check_uploads, self.upload_interval, 'upload check')
        )
        self._logger.info(
            f"Scheduler started: live check every {self.check_interval}s, "
            f"uploads every {self.upload_interval}s, max {self.max_concurrent} recordings"
        )

    async def stop(self) -> None:
        """
        Cancel both loops and stop every active capture.

        Captures get SIGTERM, then SIGKILL after their grace period; the
        watchers record each outcome before this returns.
        """
        if not self._running:
            return
        self._running = False
        self._shutting_down = True
        self._logger.info("Stopping scheduler...")

        for task in (self._streams_task, self._uploads_task):
            if task and not task.done():
                task.cancel()
        for task in (self._streams_task, self._uploads_task):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._streams_task = None
        self._uploads_task = None

        # A manual check in flight registers what it spawned before the snapshot
        async with self._streams_lock:
            pass

        async with self._state_lock:
            active = list(self._active.values())
            watchers = list(self._watchers.values())

        if active:
            self._logger.info(f"Stopping {len(active)} active recordings")
            await asyncio.gather(
                *(a.process.stop() for a in active), return_exceptions=True
            )
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

        self._logger.info("Scheduler stopped")

    async def _loop(self, body, interval: int, name: str) -> None:
        first = True
        while self._running:
            if not first or self.run_on_start:
                try:
                    await body()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.error(f"{name} failed: {e}", exc_info=True)
            first = False
            await asyncio.sleep(interval)

    async def check_streams(self) -> CheckStreamsResult:
        """
        One live-check cycle. Also the manual "run now" trigger.

        No-op while the scheduler is stopped.
        """
        if not self._running:
            return CheckStreamsResult(skipped_reason="stopped")

        async with self._streams_lock:
            result = CheckStreamsResult()
            self.last_stream_check = datetime.now()

            performers = await self.store.list_active_performers()
            result.total_performers = len(performers)

            async with self._state_lock:
                available = self.max_concurrent - self.active_count

            if available <= 0:
                self._logger.warning(
                    f"All {self.max_concurrent} recording slots busy, skipping live check"
                )
                result.skipped_reason = "no available slots"
                return result

            self._logger.info(
                f"Checking {len(performers)} performers ({available} slots available)"
            )

            for performer in performers:
                if result.started >= available or not self._running:
                    break
                for binding in performer.platforms:
                    if result.started >= available or not self._running:
                        break
                    try:
                        if await self._check_binding(performer, binding, result):
                            result.started += 1
                    except Exception as e:
                        get_performer_logger(performer.name, 'scheduler').error(
                            f"Check failed on {binding.platform}: {e}", exc_info=True
                        )

            if result.started >= available:
                self._logger.info(f"Reached {available} new recordings this cycle")
            self._logger.info(
                f"Live check done: {result.checked} probed, {result.started} recordings started"
            )
            return result

    async def _check_binding(
        self,
        performer: Performer,
        binding: PlatformBinding,
        result: CheckStreamsResult
    ) -> bool:
        """Probe one binding and start a capture if live. True if one started."""
        key = (performer.id, binding.platform)

        if await self._is_busy(key):
            get_performer_logger(performer.name, 'scheduler').debug(
                f"Already recording on {binding.platform}, skipping"
            )
            return False

        result.checked += 1
        status = await self.detector.check_binding(performer, binding)
        if not status.is_online:
            return False

        await self.store.touch_performer(performer.id, status.detected_at)

        if not await self._reserve(key):
            return False

        try:
            active = await self.service.start_recording(
                performer, binding, status.stream_url or binding.url
            )
        except BaseException:
            async with self._state_lock:
                self._reserved.discard(key)
            raise

        async with self._state_lock:
            self._reserved.discard(key)
            if active is None:
                return False
            self._active[key] = active
            self._watchers[key] = asyncio.create_task(self._watch(active))
        return True

    async def _is_busy(self, key: PairKey) -> bool:
        async with self._state_lock:
            if key in self._active or key in self._reserved:
                return True
        existing = await self.store.find_active_recording(*key)
        return existing is not None

    async def _reserve(self, key: PairKey) -> bool:
        """Claim a slot for the pair; re-checks the set, the cap and the store."""
        async with self._state_lock:
            if not self._running:
                return False
            if key in self._active or key in self._reserved:
                return False
            if self.active_count >= self.max_concurrent:
                return False
            if await self.store.find_active_recording(*key) is not None:
                return False
            self._reserved.add(key)
            return True

    async def _watch(self, active: ActiveRecording) -> None:
        """Wait for a capture to end, record the outcome, release the slot."""
        try:
            await active.process.wait()
            await self.service.finish_recording(active, shutdown=self._shutting_down)
        except Exception as e:
            get_performer_logger(active.performer.name, 'scheduler').error(
                f"Failed to finalize recording {active.recording.id}: {e}", exc_info=True
            )
            await self._mark_failed(active, str(e) or type(e).__name__)
        finally:
            async with self._state_lock:
                self._active.pop(active.key, None)
                self._watchers.pop(active.key, None)

    async def _mark_failed(self, active: ActiveRecording, error: str) -> None:
        try:
            await self.store.update_recording(
                active.recording.id,
                status=RecordingStatus.FAILED,
                error=error,
                end_time=datetime.now(),
            )
        except Exception as e:
            self._logger.error(f"Could not mark recording {active.recording.id} failed: {e}")

    async def check_uploads(self) -> CheckUploadsResult:
        """
        One upload sweep. Also the manual "run now" trigger.

        No-op while the scheduler is stopped.
        """
        result = CheckUploadsResult()
        if not self._running:
            return result

        async with self._uploads_lock:
            self.last_upload_check = datetime.now()
            pending = await self.store.list_pending_uploads()
            if pending:
                self._logger.info(f"Found {len(pending)} recordings to upload")

            for recording in pending:
                if not self._running:
                    break
                result.processed += 1
                try:
                    if await self.service.process_upload(recording):
                        result.succeeded += 1
                    else:
                        result.failed += 1
                except Exception as e:
                    result.failed += 1
                    self._logger.error(f"Upload of recording {recording.id} failed: {e}", exc_info=True)

            return result

    def get_tasks(self) -> Dict[str, bool]:
        """Whether each periodic task is alive."""
        return {
            'check_streams': bool(self._streams_task and not self._streams_task.done()),
            'check_uploads': bool(self._uploads_task and not self._uploads_task.done()),
        }

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            active_count=len(self._active),
            active_recordings=[a.recording.id for a in self._active.values()],
            last_stream_check=self.last_stream_check,
            last_upload_check=self.last_upload_check,
            check_interval=self.check_interval,
            upload_interval=self.upload_interval,
            max_concurrent=self.max_concurrent,
            tasks=self.get_tasks(),
        )
