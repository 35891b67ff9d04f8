import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from camrecorder.errors import UploadError
from camrecorder.models import Performer, PlatformBinding
from camrecorder.recorder import CaptureTool, RecordingOptions
from camrecorder.store import JsonEntityStore
from camrecorder.uploader import FileHost


# Child process scripts; argv[1] is the requested output path
WRITE_FILE = "import sys; open(sys.argv[1], 'wb').write(b'x' * 1024)"
WRITE_PART = "import sys; open(sys.argv[1] + '.part', 'wb').write(b'x' * 2048)"
WRITE_EMPTY = "import sys; open(sys.argv[1], 'wb').close()"
WRITE_NOTHING = "print('no stream available')"
WRITE_TS = (
    "import os, sys; "
    "open(os.path.splitext(sys.argv[1])[0] + '.ts', 'wb').write(b'x' * 64)"
)
WRITE_AND_SLEEP = (
    "import sys, time; "
    "open(sys.argv[1], 'wb').write(b'x' * 512); "
    "print('recording', flush=True); "
    "time.sleep(60)"
)
WRITE_LONG_LINE = (
    "import sys; "
    "open(sys.argv[1], 'wb').write(b'x' * 1024); "
    "print('y' * 100000, flush=True); "
    "print('done', flush=True)"
)
IGNORE_SIGTERM = (
    "import signal, sys, time; "
    "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "open(sys.argv[1], 'wb').write(b'x' * 256); "
    "open(sys.argv[1] + '.ready', 'w').close(); "
    "time.sleep(60)"
)


class ScriptTool(CaptureTool):
    """Capture tool stand-in that runs a Python snippet."""

    def __init__(self, script: str, name: str = "script"):
        super().__init__(sys.executable)
        self.script = script
        self.name = name

    def build_command(self, options: RecordingOptions) -> List[str]:
        return [self.executable, '-c', self.script, options.output_path]


class MissingTool(CaptureTool):
    """Capture tool whose executable does not exist."""

    name = "missing"

    def __init__(self):
        super().__init__("/nonexistent/bin/capture-tool")

    def build_command(self, options: RecordingOptions) -> List[str]:
        return [self.executable, options.stream_url, options.output_path]


class FakeHost(FileHost):
    """Upload host that counts calls and fails on demand."""

    def __init__(
        self,
        name: str,
        fail_times: int = 0,
        always_fail: bool = False,
        configured: bool = True
    ):
        super().__init__()
        self.name = name
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.configured = configured
        self.calls = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def upload(self, file_path: str) -> Tuple[str, Optional[str]]:
        self.calls += 1
        if self.always_fail or self.calls <= self.fail_times:
            raise UploadError(f"{self.name} rejected upload #{self.calls}")
        return f"https://{self.name}.example/{Path(file_path).name}", f"{self.name}-id"


@pytest.fixture
async def store(tmp_path):
    entity_store = JsonEntityStore(str(tmp_path / "store.json"))
    await entity_store.load()
    return entity_store


def make_performer(name: str, platform: str = "chaturbate") -> Performer:
    return Performer(
        name=name,
        platforms=[PlatformBinding(
            platform=platform,
            channel_id=name.lower(),
            url=f"https://{platform}.com/{name.lower()}/"
        )]
    )
