"""
Recording process manager for Cam Recorder.
Spawns an external capture tool (yt-dlp, falling back to streamlink),
watches it, stops it gracefully or by force, and verifies the output file.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import CaptureConfigurationError, CaptureStartError
from .logger import get_logger, get_performer_logger
from .platforms import PlatformConfig
from .session_store import netscape_to_cookies


# Containers a capture tool may pick instead of the requested one
ALTERNATE_EXTENSIONS = ('.ts', '.mp4', '.mkv', '.flv', '.webm')
PART_SUFFIX = '.part'


class RecorderState(Enum):
    """Lifecycle of one capture process."""
    NOT_STARTED = "not-started"
    RUNNING = "running"
    STOPPING = "stopping"
    CLOSED_SUCCESS = "closed-success"
    CLOSED_FAILURE = "closed-failure"


@dataclass
class RecordingOptions:
    """Everything needed to launch one capture."""
    stream_url: str
    output_path: str
    platform: Optional[PlatformConfig] = None
    quality: str = "best"
    max_duration: Optional[float] = None     # minutes, None or 0 = unlimited
    user_agent: Optional[str] = None
    cookie_file: Optional[str] = None        # Netscape cookie table
    cookies_from_browser: Optional[str] = None
    extra_flags: List[str] = field(default_factory=list)
    label: str = ""                          # Performer name for log context

    @property
    def effective_user_agent(self) -> Optional[str]:
        if self.user_agent:
            return self.user_agent
        return self.platform.user_agent if self.platform else None


@dataclass
class RecordingProcessResult:
    """Outcome of a finished capture."""
    success: bool
    file_path: Optional[str]
    file_size: int
    duration: float
    started_at: datetime
    ended_at: datetime
    tool: Optional[str] = None
    exit_code: Optional[int] = None
    force_killed: bool = False
    error: Optional[str] = None

    @property
    def duration_formatted(self) -> str:
        hours = int(self.duration // 3600)
        minutes = int((self.duration % 3600) // 60)
        seconds = int(self.duration % 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class CaptureTool:
    """An external program that pulls a live stream into a local file."""

    name = "capture"

    def __init__(self, executable: str):
        self.executable = executable

    def build_command(self, options: RecordingOptions) -> List[str]:
        raise NotImplementedError


class YtDlpTool(CaptureTool):
    """Primary capture tool."""

    name = "yt-dlp"

    def __init__(self, executable: str = "yt-dlp"):
        super().__init__(executable)

    def build_command(self, options: RecordingOptions) -> List[str]:
        cmd = [
            self.executable,
            options.stream_url,
            '--no-playlist',
            '--newline',
            '--format', options.quality,
            '-o', options.output_path,
        ]

        if options.platform:
            cmd.extend(options.platform.ytdlp_flags)
        cmd.extend(options.extra_flags)

        user_agent = options.effective_user_agent
        if user_agent:
            cmd.extend(['--user-agent', user_agent])

        if options.cookie_file and Path(options.cookie_file).exists():
            cmd.extend(['--cookies', options.cookie_file])
        elif options.cookies_from_browser:
            cmd.extend(['--cookies-from-browser', options.cookies_from_browser])

        return cmd


class StreamlinkTool(CaptureTool):
    """Fallback capture tool."""

    name = "streamlink"

    def __init__(self, executable: str = "streamlink"):
        super().__init__(executable)

    def build_command(self, options: RecordingOptions) -> List[str]:
        cmd = [
            self.executable,
            options.stream_url,
            options.quality,
            '-o', options.output_path,
            '--force',
        ]

        if options.platform:
            cmd.extend(options.platform.streamlink_flags)
        cmd.extend(options.extra_flags)

        user_agent = options.effective_user_agent
        if user_agent:
            cmd.extend(['--http-header', f'User-Agent={user_agent}'])

        # streamlink has no cookie-file option; pass the pairs one by one
        if options.cookie_file and Path(options.cookie_file).exists():
            text = Path(options.cookie_file).read_text(encoding='utf-8')
            for cookie in netscape_to_cookies(text):
                cmd.extend(['--http-cookie', f"{cookie['name']}={cookie['value']}"])

        return cmd


def build_capture_tools(
    use_ytdlp: bool = True,
    use_streamlink: bool = False,
    ytdlp_path: str = "yt-dlp",
    streamlink_path: str = "streamlink"
) -> List[CaptureTool]:
    """Enabled capture tools in fallback order."""
    tools: List[CaptureTool] = []
    if use_ytdlp:
        tools.append(YtDlpTool(ytdlp_path))
    if use_streamlink:
        tools.append(StreamlinkTool(streamlink_path))
    return tools


def build_output_path(
    output_dir: str,
    performer_name: str,
    platform: str,
    when: Optional[datetime] = None,
    extension: str = ".mp4"
) -> str:
    """Unique, filesystem-safe output path for one capture."""
    when = when or datetime.now()
    safe_name = re.sub(r'[^\w-]', '_', performer_name).strip('_') or 'performer'
    safe_platform = re.sub(r'[^\w-]', '_', platform)
    filename = f"{safe_name}_{safe_platform}_{when.strftime('%Y-%m-%d_%H-%M-%S-%f')}{extension}"
    return str(Path(output_dir) / filename)


class RecordingProcess:
    """
    Handle for one running capture.

    ``start`` tries each tool in order and keeps the first one that spawns.
    Output is drained into the debug log in the background. When the child
    exits the output file is verified and the handle moves to a closed state.
    """

    def __init__(
        self,
        options: RecordingOptions,
        tools: Sequence[CaptureTool],
        grace_period: float = 1.0,
        log_output: bool = True
    ):
        self.options = options
        self.tools = list(tools)
        self.grace_period = grace_period
        self.log_output = log_output

        self.state = RecorderState.NOT_STARTED
        self.tool_name: Optional[str] = None
        self.force_killed = False
        self.started_at: Optional[datetime] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._timer_fired = False
        self._stop_lock = asyncio.Lock()
        self._result: Optional[RecordingProcessResult] = None

        if options.label:
            self._logger = get_performer_logger(options.label, 'recorder')
        else:
            self._logger = get_logger('recorder')

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def exit_code(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def is_active(self) -> bool:
        return self.state in (RecorderState.RUNNING, RecorderState.STOPPING)

    async def start(self) -> 'RecordingProcess':
        """
        Spawn the first capture tool that starts.

        Raises:
            CaptureConfigurationError: If no tool is enabled.
            CaptureStartError: If every enabled tool failed to spawn.
        """
        if self.state != RecorderState.NOT_STARTED:
            raise RuntimeError(f"Capture already started (state={self.state.value})")

        if not self.tools:
            self.state = RecorderState.CLOSED_FAILURE
            raise CaptureConfigurationError("No recording method enabled")

        Path(self.options.output_path).parent.mkdir(parents=True, exist_ok=True)

        last_error: Optional[BaseException] = None
        for tool in self.tools:
            cmd = tool.build_command(self.options)
            self._logger.debug(f"Running: {' '.join(cmd)}")
            try:
                self._process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT  # Merge stderr into stdout to avoid pipe deadlock
                )
            except OSError as e:
                last_error = e
                self._logger.warning(f"{tool.name} failed to start: {e}")
                continue

            self.tool_name = tool.name
            break

        if self._process is None:
            self.state = RecorderState.CLOSED_FAILURE
            raise CaptureStartError(f"All capture tools failed to start: {last_error}")

        self.started_at = datetime.now()
        self.state = RecorderState.RUNNING
        self._logger.info(f"🔴 Recording with {self.tool_name} -> {Path(self.options.output_path).name}")

        self._drain_task = asyncio.create_task(self._drain_output())
        if self.options.max_duration and self.options.max_duration > 0:
            self._timer_task = asyncio.create_task(self._max_duration_timer(self.options.max_duration))
        self._watch_task = asyncio.create_task(self._watch())

        return self

    async def _drain_output(self) -> None:
        """Forward tool output to the debug log line by line."""
        stream = self._process.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Overlong line; the reader has already dropped it
                self._logger.debug(f"[{self.tool_name}] skipped a line over the read limit")
                continue
            if not line:
                break
            if self.log_output:
                text = line.decode('utf-8', errors='replace').rstrip()
                if text:
                    self._logger.debug(f"[{self.tool_name}] {text}")

    async def _max_duration_timer(self, minutes: float) -> None:
        await asyncio.sleep(minutes * 60)
        self._timer_fired = True
        self._logger.info(f"⏱️ Max duration of {minutes:g} min reached, stopping")
        await self.stop()

    async def _watch(self) -> None:
        """Wait for exit, then verify output and close the handle."""
        try:
            await self._process.wait()

            if self._timer_task and not self._timer_task.done() and not self._timer_fired:
                self._timer_task.cancel()

            # Grandchildren (ffmpeg) may keep the pipe open after the tool exits
            if self._drain_task:
                try:
                    await asyncio.wait_for(self._drain_task, timeout=2.0)
                except asyncio.TimeoutError:
                    pass
                except Exception as e:
                    self._logger.warning(f"Output drain failed: {e}")
        finally:
            self._result = self._verify_output(datetime.now())
            self.state = (
                RecorderState.CLOSED_SUCCESS if self._result.success
                else RecorderState.CLOSED_FAILURE
            )

        if self._result.success:
            self._logger.info(
                f"✅ Recording finished: {Path(self._result.file_path).name} "
                f"({self._result.duration_formatted}, {self._result.file_size} bytes)"
            )
        else:
            self._logger.warning(f"Recording failed: {self._result.error}")

    async def stop(self) -> None:
        """
        Terminate the capture: SIGTERM, wait the grace period, then SIGKILL.

        No-op if the process is not running.
        """
        async with self._stop_lock:
            if self.state != RecorderState.RUNNING or self._process.returncode is not None:
                return

            self.state = RecorderState.STOPPING
            self._logger.info("Stopping recording...")

            try:
                self._process.terminate()
            except ProcessLookupError:
                return

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.grace_period)
                return
            except asyncio.TimeoutError:
                pass

            self._logger.warning(f"{self.tool_name} ignored SIGTERM, force killing")
            self.force_killed = True
            try:
                self._process.kill()
            except ProcessLookupError:
                return
            await self._process.wait()

    async def wait(self) -> RecordingProcessResult:
        """Wait for the capture to finish and return its verified result."""
        if self._watch_task is None:
            raise RuntimeError("Capture was never started")
        await asyncio.shield(self._watch_task)
        return self._result

    def result(self) -> RecordingProcessResult:
        """Verified result of a finished capture."""
        if self._result is None:
            raise RuntimeError(f"Capture has not finished (state={self.state.value})")
        return self._result

    def _find_output(self) -> Optional[Path]:
        """
        Locate the output file, renaming a leftover ``.part`` into place.

        The requested path wins; then the same stem with any alternate
        container extension.
        """
        expected = Path(self.options.output_path)
        candidates = [expected]
        candidates.extend(
            expected.with_suffix(ext) for ext in ALTERNATE_EXTENSIONS if ext != expected.suffix
        )
        candidates.append(expected.with_name(expected.name + '.mp4'))

        for candidate in candidates:
            if candidate.exists():
                return candidate
            part = candidate.with_name(candidate.name + PART_SUFFIX)
            if part.exists():
                part.replace(candidate)
                self._logger.info(f"Recovered interrupted output: {part.name} -> {candidate.name}")
                return candidate
        return None

    def _verify_output(self, ended_at: datetime) -> RecordingProcessResult:
        duration = (ended_at - self.started_at).total_seconds()
        base = dict(
            started_at=self.started_at,
            ended_at=ended_at,
            duration=duration,
            tool=self.tool_name,
            exit_code=self.exit_code,
            force_killed=self.force_killed,
        )

        path = self._find_output()
        if path is None:
            return RecordingProcessResult(
                success=False, file_path=None, file_size=0,
                error="No output file was produced", **base
            )

        size = path.stat().st_size
        if size == 0:
            return RecordingProcessResult(
                success=False, file_path=str(path), file_size=0,
                error="Output file is empty", **base
            )

        return RecordingProcessResult(success=True, file_path=str(path), file_size=size, **base)


async def start_recording(
    options: RecordingOptions,
    tools: Sequence[CaptureTool],
    grace_period: float = 1.0,
    log_output: bool = True
) -> RecordingProcess:
    """Create a handle and start it."""
    process = RecordingProcess(options, tools, grace_period=grace_period, log_output=log_output)
    return await process.start()
