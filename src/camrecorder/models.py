"""
Entity models for Cam Recorder.
Performers under watch, recording attempts and published videos.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RecordingStatus(Enum):
    """Capture lifecycle of a Recording."""
    SCHEDULED = "scheduled"     # Created, capture not spawned yet
    RECORDING = "recording"     # Capture process running
    COMPLETED = "completed"     # Output file verified
    FAILED = "failed"           # Capture never started or produced nothing usable


class UploadStatus(Enum):
    """Upload lifecycle of a completed Recording."""
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_RECORDING_STATUSES = (RecordingStatus.SCHEDULED, RecordingStatus.RECORDING)


@dataclass
class PlatformBinding:
    """A performer's channel on one streaming site."""
    platform: str
    channel_id: str
    url: str = ""

    def to_dict(self) -> dict:
        return {
            'platform': self.platform,
            'channel_id': self.channel_id,
            'url': self.url
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PlatformBinding':
        return cls(
            platform=data['platform'],
            channel_id=data.get('channel_id', ''),
            url=data.get('url', '')
        )


@dataclass
class Performer:
    """Identity under monitoring."""
    name: str
    platforms: List[PlatformBinding] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    is_active: bool = True
    last_seen: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'platforms': [binding.to_dict() for binding in self.platforms],
            'is_active': self.is_active,
            'last_seen': _iso(self.last_seen),
            'tags': self.tags,
            'created_at': _iso(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Performer':
        return cls(
            id=data['id'],
            name=data['name'],
            platforms=[PlatformBinding.from_dict(b) for b in data.get('platforms', [])],
            is_active=data.get('is_active', True),
            last_seen=_parse_dt(data.get('last_seen')),
            tags=data.get('tags', []),
            created_at=_parse_dt(data.get('created_at')) or datetime.now()
        )


@dataclass
class Recording:
    """One capture attempt of a live session."""
    performer_id: str
    platform: str
    performer_name: str = ""
    id: str = field(default_factory=new_id)
    stream_url: str = ""           # URL handed to the capture tool
    source_url: str = ""           # Profile page the stream was detected on
    status: RecordingStatus = RecordingStatus.SCHEDULED
    upload_status: Optional[UploadStatus] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0
    file_path: Optional[str] = None
    file_size: int = 0
    capture_tool: Optional[str] = None
    video_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RECORDING_STATUSES

    @property
    def duration_formatted(self) -> str:
        """Human-readable HH:MM:SS duration."""
        hours = int(self.duration // 3600)
        minutes = int((self.duration % 3600) // 60)
        seconds = int(self.duration % 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    @property
    def file_size_formatted(self) -> str:
        size = float(self.file_size)
        for unit in ['B', 'KB', 'MB', 'GB']:
            if size < 1024:
                return f"{size:.2f} {unit}"
            size /= 1024
        return f"{size:.2f} TB"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'performer_id': self.performer_id,
            'performer_name': self.performer_name,
            'platform': self.platform,
            'stream_url': self.stream_url,
            'source_url': self.source_url,
            'status': self.status.value,
            'upload_status': self.upload_status.value if self.upload_status else None,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'duration': self.duration,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'capture_tool': self.capture_tool,
            'video_id': self.video_id,
            'error': self.error,
            'created_at': _iso(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Recording':
        upload_status = data.get('upload_status')
        return cls(
            id=data['id'],
            performer_id=data['performer_id'],
            performer_name=data.get('performer_name', ''),
            platform=data['platform'],
            stream_url=data.get('stream_url', ''),
            source_url=data.get('source_url', ''),
            status=RecordingStatus(data.get('status', 'scheduled')),
            upload_status=UploadStatus(upload_status) if upload_status else None,
            start_time=_parse_dt(data.get('start_time')),
            end_time=_parse_dt(data.get('end_time')),
            duration=data.get('duration', 0.0),
            file_path=data.get('file_path'),
            file_size=data.get('file_size', 0),
            capture_tool=data.get('capture_tool'),
            video_id=data.get('video_id'),
            error=data.get('error'),
            created_at=_parse_dt(data.get('created_at')) or datetime.now()
        )


@dataclass
class Video:
    """Publishable media entity created once an upload succeeds."""
    title: str
    performer_id: str
    platform: str
    description: str = ""
    id: str = field(default_factory=new_id)
    urls: Dict[str, str] = field(default_factory=dict)          # host name -> playback URL
    content_ids: Dict[str, str] = field(default_factory=dict)   # host name -> remote file id
    content_id: Optional[str] = None
    duration: float = 0.0
    tags: List[str] = field(default_factory=list)
    thumbnails: List[str] = field(default_factory=list)
    width: Optional[int] = None
    height: Optional[int] = None
    recording_id: Optional[str] = None
    views: int = 0
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def gofile_url(self) -> Optional[str]:
        return self.urls.get('gofile')

    @property
    def mixdrop_url(self) -> Optional[str]:
        return self.urls.get('mixdrop')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'performer_id': self.performer_id,
            'platform': self.platform,
            'urls': self.urls,
            'content_ids': self.content_ids,
            'content_id': self.content_id,
            'duration': self.duration,
            'tags': self.tags,
            'thumbnails': self.thumbnails,
            'width': self.width,
            'height': self.height,
            'recording_id': self.recording_id,
            'views': self.views,
            'created_at': _iso(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Video':
        return cls(
            id=data['id'],
            title=data['title'],
            description=data.get('description', ''),
            performer_id=data['performer_id'],
            platform=data['platform'],
            urls=data.get('urls', {}),
            content_ids=data.get('content_ids', {}),
            content_id=data.get('content_id'),
            duration=data.get('duration', 0.0),
            tags=data.get('tags', []),
            thumbnails=data.get('thumbnails', []),
            width=data.get('width'),
            height=data.get('height'),
            recording_id=data.get('recording_id'),
            views=data.get('views', 0),
            created_at=_parse_dt(data.get('created_at')) or datetime.now()
        )
