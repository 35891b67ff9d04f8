import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from camrecorder import recording_service
from camrecorder.errors import StoreError
from camrecorder.models import Recording, RecordingStatus, UploadStatus
from camrecorder.platforms import DEFAULT_PLATFORMS
from camrecorder.recording_service import MISSING_FILE_ERROR, SHUTDOWN_ERROR, RecordingService
from camrecorder.session_store import CookieFormat, SessionStore
from camrecorder.uploader import UploadPipeline

from conftest import (
    IGNORE_SIGTERM,
    WRITE_AND_SLEEP,
    WRITE_EMPTY,
    WRITE_FILE,
    FakeHost,
    MissingTool,
    ScriptTool,
    make_performer,
)


class FakeMedia:
    async def thumbnails(self, input_path, count=3, offsets=None):
        return [f"/thumbs/{Path(input_path).stem}_{i}.jpg" for i in range(1, count + 1)]

    async def metadata(self, input_path):
        return {'duration': 12.0, 'width': 1280, 'height': 720}


@pytest.fixture
async def make_service(store, tmp_path):
    pipelines = []

    def factory(tools=(), primary=None, secondary=None, **kwargs):
        pipeline = UploadPipeline(
            primary or FakeHost("gofile"),
            secondary or FakeHost("mixdrop"),
            retry_delay=0,
        )
        pipelines.append(pipeline)
        return RecordingService(
            store, pipeline, DEFAULT_PLATFORMS, list(tools),
            output_dir=str(tmp_path / "recordings"), **kwargs
        )

    yield factory
    for pipeline in pipelines:
        await pipeline.close()


async def completed_recording(store, tmp_path, **fields) -> Recording:
    path = tmp_path / "alice.mp4"
    path.write_bytes(b"v" * 64)
    values = dict(
        performer_id="p1", performer_name="Alice", platform="chaturbate",
        status=RecordingStatus.COMPLETED, upload_status=UploadStatus.PENDING,
        start_time=datetime(2024, 5, 1, 21, 0), duration=42.0,
        file_path=str(path), file_size=64,
    )
    values.update(fields)
    return await store.create_recording(Recording(**values))


async def test_successful_capture_lifecycle(store, make_service):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[ScriptTool(WRITE_FILE)])

    active = await service.start_recording(performer, performer.platforms[0], "https://x/live.m3u8")

    assert active is not None
    assert active.key == (performer.id, "chaturbate")
    running = await store.get_recording(active.recording.id)
    assert running.status == RecordingStatus.RECORDING
    assert running.capture_tool == "script"
    assert running.start_time is not None
    assert running.source_url == "https://chaturbate.com/alice/"

    finished = await asyncio.wait_for(service.finish_recording(active), timeout=15)

    assert finished.status == RecordingStatus.COMPLETED
    assert finished.upload_status == UploadStatus.PENDING
    assert finished.file_size == 1024
    assert finished.end_time is not None
    assert Path(finished.file_path).exists()


async def test_start_failure_marks_recording_failed(store, make_service):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[MissingTool()])

    active = await service.start_recording(performer, performer.platforms[0], "https://x/live.m3u8")

    assert active is None
    [recording] = await store.list_recordings()
    assert recording.status == RecordingStatus.FAILED
    assert recording.error
    assert await store.find_active_recording(performer.id, "chaturbate") is None


async def test_no_tools_marks_recording_failed(store, make_service):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[])

    assert await service.start_recording(performer, performer.platforms[0], "u") is None
    [recording] = await store.list_recordings()
    assert recording.error == "No recording method enabled"


async def test_capture_is_stopped_when_it_cannot_be_registered(store, make_service, monkeypatch):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[ScriptTool(WRITE_AND_SLEEP)])
    spawned = []

    class TrackedProcess(recording_service.RecordingProcess):
        async def start(self):
            spawned.append(self)
            return await super().start()

    update_recording = store.update_recording

    async def failing_update(recording_id, **fields):
        if fields.get('status') == RecordingStatus.RECORDING:
            raise StoreError("disk full")
        return await update_recording(recording_id, **fields)

    monkeypatch.setattr(recording_service, 'RecordingProcess', TrackedProcess)
    monkeypatch.setattr(store, 'update_recording', failing_update)

    with pytest.raises(StoreError):
        await service.start_recording(performer, performer.platforms[0], "https://x/live.m3u8")

    [process] = spawned
    await asyncio.wait_for(process.wait(), timeout=15)
    assert process.exit_code is not None
    [recording] = await store.list_recordings()
    assert recording.status == RecordingStatus.FAILED
    assert recording.error == "disk full"


async def test_empty_output_marks_recording_failed(store, make_service):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[ScriptTool(WRITE_EMPTY)])

    active = await service.start_recording(performer, performer.platforms[0], "u")
    finished = await asyncio.wait_for(service.finish_recording(active), timeout=15)

    assert finished.status == RecordingStatus.FAILED
    assert finished.error == "Output file is empty"
    assert finished.upload_status is None


async def test_force_kill_at_shutdown_is_failure(store, make_service):
    performer = await store.save_performer(make_performer("Alice"))
    service = make_service(tools=[ScriptTool(IGNORE_SIGTERM)], grace_period=0.3)

    active = await service.start_recording(performer, performer.platforms[0], "u")
    ready = Path(active.process.options.output_path + ".ready")
    for _ in range(100):
        if ready.exists():
            break
        await asyncio.sleep(0.05)

    await active.process.stop()
    finished = await asyncio.wait_for(service.finish_recording(active, shutdown=True), timeout=15)

    assert finished.status == RecordingStatus.FAILED
    assert finished.error == SHUTDOWN_ERROR


async def test_capture_gets_netscape_cookie_file(store, tmp_path, make_service):
    sessions = SessionStore(str(tmp_path / "cookies"))
    await sessions.save("chaturbate.com", [
        {'name': 'sid', 'value': 'v', 'domain': '.chaturbate.com', 'path': '/', 'expires': -1},
    ])
    service = make_service(session_store=sessions)

    cookie_file = await service._cookie_file(DEFAULT_PLATFORMS['chaturbate'])

    assert cookie_file == str(sessions.cookie_path("chaturbate.com", CookieFormat.NETSCAPE))
    assert "sid\tv" in Path(cookie_file).read_text()
    assert await service._cookie_file(DEFAULT_PLATFORMS['stripchat']) is None


async def test_recover_interrupted(store, tmp_path, make_service):
    output = tmp_path / "bob.mp4"
    Path(str(output) + ".part").write_bytes(b"p" * 128)
    survivor = await store.create_recording(Recording(
        performer_id="p1", platform="chaturbate", status=RecordingStatus.RECORDING,
        start_time=datetime(2024, 1, 1), file_path=str(output),
    ))
    lost = await store.create_recording(Recording(
        performer_id="p2", platform="stripchat", status=RecordingStatus.SCHEDULED,
    ))
    service = make_service()

    assert await service.recover_interrupted() == 1

    recovered = await store.get_recording(survivor.id)
    assert recovered.status == RecordingStatus.COMPLETED
    assert recovered.upload_status == UploadStatus.PENDING
    assert recovered.file_size == 128
    assert output.exists()
    failed = await store.get_recording(lost.id)
    assert failed.status == RecordingStatus.FAILED
    assert failed.error == "Interrupted by restart"


async def test_upload_publishes_video_and_deletes_file(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path)
    service = make_service()

    assert await service.process_upload(recording)

    updated = await store.get_recording(recording.id)
    assert updated.upload_status == UploadStatus.COMPLETED
    assert not Path(recording.file_path).exists()

    video = await store.get_video(updated.video_id)
    assert video.title == "Alice - Chaturbate - 2024-05-01"
    assert video.description == "Recorded webcam video of Alice from Chaturbate"
    assert video.gofile_url == "https://gofile.example/alice.mp4"
    assert video.mixdrop_url == "https://mixdrop.example/alice.mp4"
    assert video.content_id == "gofile-id"
    assert video.tags == ["chaturbate", "webcam", "recording"]
    assert video.duration == 42.0
    assert video.recording_id == recording.id


async def test_fallback_host_becomes_content_id(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path)
    service = make_service(primary=FakeHost("gofile", always_fail=True))

    assert await service.process_upload(recording)

    video = await store.get_video((await store.get_recording(recording.id)).video_id)
    assert video.urls == {'mixdrop': "https://mixdrop.example/alice.mp4"}
    assert video.content_id == "mixdrop-id"


async def test_total_upload_failure_keeps_file(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path)
    service = make_service(
        primary=FakeHost("gofile", always_fail=True),
        secondary=FakeHost("mixdrop", always_fail=True),
    )

    assert not await service.process_upload(recording)

    updated = await store.get_recording(recording.id)
    assert updated.upload_status == UploadStatus.FAILED
    assert "mixdrop rejected" in updated.error
    assert updated.video_id is None
    assert Path(recording.file_path).exists()
    assert len(await store.list_pending_uploads()) == 1


async def test_missing_local_file(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path, file_path=str(tmp_path / "gone.mp4"))
    primary = FakeHost("gofile")
    service = make_service(primary=primary)

    assert not await service.process_upload(recording)

    updated = await store.get_recording(recording.id)
    assert updated.upload_status == UploadStatus.FAILED
    assert updated.error == MISSING_FILE_ERROR
    assert primary.calls == 0


async def test_already_published_recording_is_not_uploaded_again(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path, video_id="v1")
    primary = FakeHost("gofile")
    service = make_service(primary=primary)

    assert await service.process_upload(recording)

    assert primary.calls == 0
    assert (await store.get_recording(recording.id)).upload_status == UploadStatus.COMPLETED
    assert not Path(recording.file_path).exists()


async def test_media_fills_thumbnails_and_dimensions(store, tmp_path, make_service):
    recording = await completed_recording(store, tmp_path)
    service = make_service(media=FakeMedia(), thumbnail_count=2)

    await service.process_upload(recording)

    video = await store.get_video((await store.get_recording(recording.id)).video_id)
    assert video.thumbnails == ["/thumbs/alice_1.jpg", "/thumbs/alice_2.jpg"]
    assert (video.width, video.height) == (1280, 720)

