"""
Media inspection via ffprobe/ffmpeg.
Thumbnails and basic metadata for finished recordings. Best effort:
failures are logged and yield empty results.
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .logger import get_logger


DEFAULT_OFFSETS = (0.1, 0.5, 0.9)


class MediaInspector:
    """ffprobe metadata and ffmpeg frame grabs."""

    def __init__(
        self,
        thumbnails_dir: str = "./data/thumbnails",
        width: int = 320,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: float = 60.0
    ):
        self.thumbnails_dir = Path(thumbnails_dir)
        self.width = width
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self._logger = get_logger('media')

    async def _run(self, *cmd: str) -> Tuple[int, bytes]:
        """Run a tool to completion; a child that outlives the timeout is killed."""
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout

    async def metadata(self, input_path: str) -> dict:
        """Duration, width, height, codec and bitrate of a video file."""
        try:
            _, stdout = await self._run(
                self.ffprobe_path, '-v', 'error',
                '-select_streams', 'v:0',
                '-show_entries', 'stream=width,height,codec_name,duration',
                '-show_entries', 'format=duration,bit_rate',
                '-of', 'json',
                input_path,
            )
            data = json.loads(stdout.decode() or '{}')
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Failed to get video metadata: {e}")
            return {}

        fmt = data.get('format', {})
        streams = data.get('streams') or [{}]
        stream = streams[0]

        duration = fmt.get('duration') or stream.get('duration') or 0
        return {
            'duration': float(duration),
            'width': stream.get('width'),
            'height': stream.get('height'),
            'codec': stream.get('codec_name'),
            'bitrate': int(fmt['bit_rate']) if fmt.get('bit_rate') else None,
        }

    async def thumbnails(
        self,
        input_path: str,
        count: int = 3,
        offsets: Optional[Sequence[float]] = None
    ) -> List[str]:
        """
        Grab ``count`` frames at fractions of the duration.

        Args:
            input_path: Video file.
            count: Number of thumbnails.
            offsets: Fractions of the duration (0..1); evenly spaced if omitted.

        Returns:
            Paths of the thumbnails that were written.
        """
        if count <= 0:
            return []

        if offsets is None:
            if count == len(DEFAULT_OFFSETS):
                offsets = DEFAULT_OFFSETS
            else:
                offsets = [(i + 1) / (count + 1) for i in range(count)]

        meta = await self.metadata(input_path)
        duration = meta.get('duration') or 0
        if duration <= 0:
            self._logger.warning(f"Unknown duration for {Path(input_path).name}, skipping thumbnails")
            return []

        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(input_path).stem
        paths = []

        for index, fraction in enumerate(list(offsets)[:count], start=1):
            thumb_path = self.thumbnails_dir / f"{stem}_{index}.jpg"
            try:
                returncode, _ = await self._run(
                    self.ffmpeg_path, '-y',
                    '-ss', f"{duration * fraction:.2f}",
                    '-i', input_path,
                    '-vframes', '1',
                    '-vf', f'scale={self.width}:-1',
                    '-q:v', '5',
                    str(thumb_path),
                )
            except (OSError, asyncio.TimeoutError) as e:
                self._logger.warning(f"Failed to generate thumbnail {index}: {e}")
                continue

            if returncode == 0 and thumb_path.exists():
                paths.append(str(thumb_path))

        self._logger.debug(f"Generated {len(paths)} thumbnails for {stem}")
        return paths
