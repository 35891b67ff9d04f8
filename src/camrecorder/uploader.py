"""
Upload pipeline for Cam Recorder.
Pushes finished recordings to remote file hosts (Gofile, Mixdrop) with
primary/secondary priority, best-effort mirroring and bounded retries.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiohttp

from .errors import UploadError
from .logger import get_logger


GB = 1024 * 1024 * 1024
DEFAULT_MAX_FILE_SIZE = 5 * GB


@dataclass
class HostUploadResult:
    """Outcome of uploading one file to one host."""
    host_name: str
    success: bool
    url: Optional[str] = None
    file_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


class FileHost:
    """
    A remote file host.

    ``upload`` returns ``(url, file_id)`` or raises UploadError on any
    rejection. The HTTP session is owned by the pipeline and bound with
    ``bind_session``.
    """

    name = "host"

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return True

    def bind_session(self, session: aiohttp.ClientSession) -> None:
        self._session = session

    async def upload(self, file_path: str) -> Tuple[str, Optional[str]]:
        raise NotImplementedError

    async def _post_multipart(self, url: str, file_path: str, fields: Dict[str, str]) -> dict:
        """POST the file and extra fields as multipart/form-data, return JSON body."""
        if self._session is None:
            raise UploadError(f"{self.name}: no HTTP session bound")

        path = Path(file_path)
        with open(path, 'rb') as f:
            form = aiohttp.FormData()
            form.add_field('file', f, filename=path.name, content_type='application/octet-stream')
            for key, value in fields.items():
                form.add_field(key, value)

            async with self._session.post(url, data=form) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise UploadError(f"{self.name}: HTTP {resp.status}: {body[:200]}")
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise UploadError(f"{self.name}: invalid JSON response") from e


class GofileHost(FileHost):
    """Gofile: token authentication."""

    name = "gofile"
    UPLOAD_URL = "https://api.gofile.io/uploadFile"

    def __init__(self, token: str = ""):
        super().__init__()
        self.token = token

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def upload(self, file_path: str) -> Tuple[str, Optional[str]]:
        data = await self._post_multipart(self.UPLOAD_URL, file_path, {'token': self.token})

        if data.get('status') != 'ok':
            raise UploadError(f"gofile: upload rejected: {data.get('status') or data}")

        payload = data.get('data') or {}
        url = payload.get('downloadPage')
        if not url:
            raise UploadError("gofile: response has no download page")
        return url, payload.get('fileId')


class MixdropHost(FileHost):
    """Mixdrop: email + API key authentication."""

    name = "mixdrop"
    UPLOAD_URL = "https://api.mixdrop.co/upload"

    def __init__(self, email: str = "", api_key: str = ""):
        super().__init__()
        self.email = email
        self.api_key = api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.email and self.api_key)

    async def upload(self, file_path: str) -> Tuple[str, Optional[str]]:
        data = await self._post_multipart(
            self.UPLOAD_URL, file_path, {'email': self.email, 'key': self.api_key}
        )

        if not data.get('success'):
            raise UploadError(f"mixdrop: upload rejected: {data.get('result') or data}")

        result = data.get('result') or {}
        url = data.get('url') or result.get('url')
        if not url:
            raise UploadError("mixdrop: response has no url")
        return url, result.get('fileref')


HOST_TYPES = {
    GofileHost.name: GofileHost,
    MixdropHost.name: MixdropHost,
}


class UploadPipeline:
    """
    Primary-then-secondary upload policy.

    1. Validate the file (exists, under the size ceiling). Failure returns a
       single ``validation`` result with no network calls.
    2. Upload to the primary with a bounded retry loop.
    3. On primary success, mirror to the secondary best-effort.
    4. On primary failure, the secondary is the fallback.

    The returned list holds every attempt actually made.
    """

    def __init__(
        self,
        primary: FileHost,
        secondary: Optional[FileHost] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        mirror: bool = True,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Args:
            primary: Host tried first.
            secondary: Mirror / fallback host.
            max_file_size: Size ceiling in bytes.
            max_attempts: Attempts per host, including the first.
            retry_delay: Seconds between attempts.
            mirror: Upload to the secondary after a primary success.
            session: Existing aiohttp session; one is created lazily otherwise.
        """
        self.primary = primary
        self.secondary = secondary
        self.max_file_size = max_file_size
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.mirror = mirror

        self._session = session
        self._owns_session = session is None
        self._logger = get_logger('uploader')

    @property
    def hosts(self) -> List[FileHost]:
        return [h for h in (self.primary, self.secondary) if h is not None]

    async def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=60, sock_read=600)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        for host in self.hosts:
            host.bind_session(self._session)

    async def close(self) -> None:
        """Close the HTTP session if the pipeline created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def validate(self, file_path: str) -> Optional[str]:
        """Return an error message, or None if the file can be uploaded."""
        path = Path(file_path)
        if not path.is_file():
            return f"File not found: {file_path}"
        size = path.stat().st_size
        if size > self.max_file_size:
            return (
                f"File too large: {size / GB:.2f} GB exceeds limit of "
                f"{self.max_file_size / GB:.2f} GB"
            )
        return None

    async def upload_with_retry(self, host: FileHost, file_path: str) -> HostUploadResult:
        """Run the whole host attempt up to ``max_attempts`` times."""
        if not host.is_configured:
            self._logger.warning(f"{host.name} is not configured, skipping")
            return HostUploadResult(
                host_name=host.name, success=False,
                error=f"{host.name} credentials are not configured"
            )

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._logger.info(f"📤 Uploading {Path(file_path).name} to {host.name} (attempt {attempt}/{self.max_attempts})")
                url, file_id = await host.upload(file_path)
                self._logger.info(f"✅ {host.name}: {url}")
                return HostUploadResult(
                    host_name=host.name, success=True,
                    url=url, file_id=file_id, attempts=attempt
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                self._logger.warning(f"{host.name} attempt {attempt} failed: {last_error}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)

        self._logger.error(f"❌ {host.name} failed after {self.max_attempts} attempts: {last_error}")
        return HostUploadResult(
            host_name=host.name, success=False,
            error=last_error, attempts=self.max_attempts
        )

    async def upload_to_all(self, file_path: str) -> List[HostUploadResult]:
        """
        Upload a file according to the priority policy.

        Returns:
            One or two results, one per host actually attempted.
        """
        error = self.validate(file_path)
        if error:
            self._logger.error(f"Upload validation failed: {error}")
            return [HostUploadResult(host_name="validation", success=False, error=error)]

        await self._ensure_session()

        results = [await self.upload_with_retry(self.primary, file_path)]

        if self.secondary is None:
            return results

        if results[0].success:
            if self.mirror:
                mirror = await self.upload_with_retry(self.secondary, file_path)
                if not mirror.success:
                    self._logger.warning(f"Mirror to {self.secondary.name} failed: {mirror.error}")
                results.append(mirror)
        else:
            self._logger.info(f"Falling back to {self.secondary.name}")
            results.append(await self.upload_with_retry(self.secondary, file_path))

        return results


def create_host(name: str, **credentials) -> FileHost:
    """Build a host by name ('gofile' or 'mixdrop')."""
    try:
        host_type = HOST_TYPES[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown upload host: {name}") from None
    return host_type(**credentials)
