"""
Entity store for Cam Recorder.
CRUD over performers, recordings and videos, persisted as one JSON document.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from .errors import StoreError
from .logger import get_logger
from .models import (
    ACTIVE_RECORDING_STATUSES,
    Performer,
    Recording,
    RecordingStatus,
    UploadStatus,
    Video,
)


class EntityStore(ABC):
    """Persistent entity store consumed by the scheduler and recording service."""

    @abstractmethod
    async def list_active_performers(self) -> List[Performer]: ...

    @abstractmethod
    async def get_performer(self, performer_id: str) -> Optional[Performer]: ...

    @abstractmethod
    async def save_performer(self, performer: Performer) -> Performer: ...

    @abstractmethod
    async def touch_performer(self, performer_id: str, when: datetime) -> None: ...

    @abstractmethod
    async def create_recording(self, recording: Recording) -> Recording: ...

    @abstractmethod
    async def get_recording(self, recording_id: str) -> Optional[Recording]: ...

    @abstractmethod
    async def update_recording(self, recording_id: str, **fields) -> Recording: ...

    @abstractmethod
    async def find_active_recording(self, performer_id: str, platform: str) -> Optional[Recording]: ...

    @abstractmethod
    async def list_recordings(self, status: Optional[RecordingStatus] = None) -> List[Recording]: ...

    @abstractmethod
    async def list_pending_uploads(self) -> List[Recording]: ...

    @abstractmethod
    async def count_recording(self) -> int: ...

    @abstractmethod
    async def create_video(self, video: Video) -> Video: ...

    @abstractmethod
    async def get_video(self, video_id: str) -> Optional[Video]: ...


class JsonEntityStore(EntityStore):
    """
    JSON file backed entity store.

    Every mutation rewrites the whole document through a temp file and an
    atomic replace, under a single asyncio lock. Returned entities are copies;
    changes go through the update methods.
    """

    def __init__(self, path: str = "./data/store.json"):
        self.path = Path(path)
        self._logger = get_logger('store')
        self._lock = asyncio.Lock()

        self._performers: Dict[str, Performer] = {}
        self._recordings: Dict[str, Recording] = {}
        self._videos: Dict[str, Video] = {}

        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> None:
        """Load the document from disk; a missing file means an empty store."""
        async with self._lock:
            if not self.path.exists():
                self._logger.info("No store file found, starting fresh")
                return

            try:
                async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                    data = json.loads(await f.read())
            except (OSError, ValueError) as e:
                raise StoreError(f"Failed to load store {self.path}: {e}") from e

            self._performers = {
                p['id']: Performer.from_dict(p) for p in data.get('performers', [])
            }
            self._recordings = {
                r['id']: Recording.from_dict(r) for r in data.get('recordings', [])
            }
            self._videos = {
                v['id']: Video.from_dict(v) for v in data.get('videos', [])
            }

            self._logger.info(
                f"Loaded store: {len(self._performers)} performers, "
                f"{len(self._recordings)} recordings, {len(self._videos)} videos"
            )

    async def _save_unlocked(self) -> None:
        """Write the document (caller must hold lock)."""
        data = {
            'performers': [p.to_dict() for p in self._performers.values()],
            'recordings': [r.to_dict() for r in self._recordings.values()],
            'videos': [v.to_dict() for v in self._videos.values()],
            'last_updated': datetime.now().isoformat()
        }

        tmp_file = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
        tmp_file.replace(self.path)

    # Performers

    async def list_active_performers(self) -> List[Performer]:
        async with self._lock:
            return [copy.deepcopy(p) for p in self._performers.values() if p.is_active]

    async def get_performer(self, performer_id: str) -> Optional[Performer]:
        async with self._lock:
            performer = self._performers.get(performer_id)
            return copy.deepcopy(performer) if performer else None

    async def save_performer(self, performer: Performer) -> Performer:
        async with self._lock:
            self._performers[performer.id] = copy.deepcopy(performer)
            await self._save_unlocked()
            return performer

    async def touch_performer(self, performer_id: str, when: datetime) -> None:
        """Record the last time a performer was seen live."""
        async with self._lock:
            performer = self._performers.get(performer_id)
            if performer is None:
                raise StoreError(f"Unknown performer: {performer_id}")
            performer.last_seen = when
            await self._save_unlocked()

    # Recordings

    async def create_recording(self, recording: Recording) -> Recording:
        async with self._lock:
            self._recordings[recording.id] = copy.deepcopy(recording)
            await self._save_unlocked()
            return copy.deepcopy(recording)

    async def get_recording(self, recording_id: str) -> Optional[Recording]:
        async with self._lock:
            recording = self._recordings.get(recording_id)
            return copy.deepcopy(recording) if recording else None

    async def update_recording(self, recording_id: str, **fields) -> Recording:
        """Apply field updates to one recording atomically and return the new copy."""
        async with self._lock:
            recording = self._recordings.get(recording_id)
            if recording is None:
                raise StoreError(f"Unknown recording: {recording_id}")
            for name, value in fields.items():
                if not hasattr(recording, name):
                    raise StoreError(f"Recording has no field '{name}'")
                setattr(recording, name, value)
            await self._save_unlocked()
            return copy.deepcopy(recording)

    async def find_active_recording(self, performer_id: str, platform: str) -> Optional[Recording]:
        async with self._lock:
            for recording in self._recordings.values():
                if (
                    recording.performer_id == performer_id
                    and recording.platform == platform
                    and recording.status in ACTIVE_RECORDING_STATUSES
                ):
                    return copy.deepcopy(recording)
            return None

    async def list_recordings(self, status: Optional[RecordingStatus] = None) -> List[Recording]:
        async with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._recordings.values()
                if status is None or r.status == status
            ]

    async def list_pending_uploads(self) -> List[Recording]:
        """Recordings that finished capturing but are not uploaded yet."""
        async with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._recordings.values()
                if r.status == RecordingStatus.COMPLETED
                and r.upload_status != UploadStatus.COMPLETED
            ]

    async def count_recording(self) -> int:
        async with self._lock:
            return sum(
                1 for r in self._recordings.values()
                if r.status == RecordingStatus.RECORDING
            )

    # Videos

    async def create_video(self, video: Video) -> Video:
        async with self._lock:
            self._videos[video.id] = copy.deepcopy(video)
            await self._save_unlocked()
            return copy.deepcopy(video)

    async def get_video(self, video_id: str) -> Optional[Video]:
        async with self._lock:
            video = self._videos.get(video_id)
            return copy.deepcopy(video) if video else None
