"""
Session store for Cam Recorder.
Persists per-domain browser cookies so probes and captures reuse login state.

Cookies are handled as Playwright cookie dicts (name, value, domain, path,
expires, httpOnly, secure, sameSite). Two on-disk formats are supported:
the structured JSON list, and the flat Netscape table understood by yt-dlp,
streamlink and ``http.cookiejar.MozillaCookieJar``.
"""

import json
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from .errors import SessionStoreError
from .logger import get_logger


Cookie = Dict[str, object]

NETSCAPE_HEADER = "# Netscape HTTP Cookie File"
HTTPONLY_PREFIX = "#HttpOnly_"
# Stand-in expiry for session cookies in the flat format
SESSION_EXPIRY_SENTINEL = 2147483647


class CookieFormat(Enum):
    """On-disk cookie serialization."""
    JSON = "json"
    NETSCAPE = "netscape"

    @property
    def extension(self) -> str:
        return ".json" if self is CookieFormat.JSON else ".cookies.txt"


def normalize_domain(domain: str) -> str:
    """
    Turn a domain or URL into a stable file key.

    ``https://www.Example.com/path`` and ``example.com`` both become
    ``example.com``.
    """
    key = domain.strip().lower()
    key = re.sub(r'^[a-z][a-z0-9+.-]*://', '', key)
    key = key.split('/', 1)[0]
    key = key.lstrip('.')
    if key.startswith('www.'):
        key = key[4:]
    key = re.sub(r'[^\w.]+', '_', key)
    return key


def cookies_to_netscape(cookies: List[Cookie]) -> str:
    """Render cookies as a Netscape cookie table."""
    lines = [NETSCAPE_HEADER, "# Saved by camrecorder", ""]
    for cookie in cookies:
        domain = str(cookie.get('domain', ''))
        include_subdomains = "TRUE" if domain.startswith('.') else "FALSE"
        path = str(cookie.get('path') or '/')
        secure = "TRUE" if cookie.get('secure') else "FALSE"

        expires = cookie.get('expires', -1)
        if expires is None or float(expires) < 0:
            expires = SESSION_EXPIRY_SENTINEL

        prefix = HTTPONLY_PREFIX if cookie.get('httpOnly') else ""
        lines.append(
            f"{prefix}{domain}\t{include_subdomains}\t{path}\t{secure}\t"
            f"{int(float(expires))}\t{cookie.get('name', '')}\t{cookie.get('value', '')}"
        )
    return "\n".join(lines) + "\n"


def netscape_to_cookies(text: str) -> List[Cookie]:
    """Parse a Netscape cookie table back into cookie dicts."""
    cookies: List[Cookie] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        http_only = False
        if line.startswith(HTTPONLY_PREFIX):
            http_only = True
            line = line[len(HTTPONLY_PREFIX):]
        elif line.startswith('#'):
            continue

        parts = line.split('\t')
        if len(parts) < 7:
            raise SessionStoreError(f"Malformed cookie line: {raw!r}")

        domain, _, path, secure, expires, name = parts[:6]
        value = '\t'.join(parts[6:])
        expiry = int(expires) if expires.lstrip('-').isdigit() else SESSION_EXPIRY_SENTINEL

        cookies.append({
            'name': name,
            'value': value,
            'domain': domain,
            'path': path,
            'expires': -1 if expiry == SESSION_EXPIRY_SENTINEL else expiry,
            'httpOnly': http_only,
            'secure': secure.upper() == "TRUE",
            'sameSite': "Lax",
        })
    return cookies


class SessionStore:
    """
    Cookie files keyed by normalized domain.

    A missing file is never an error: ``load`` returns None and the caller
    treats the domain as unauthenticated.
    """

    def __init__(
        self,
        cookies_dir: str = "./data/cookies",
        default_format: CookieFormat = CookieFormat.JSON
    ):
        self.cookies_dir = Path(cookies_dir)
        self.default_format = default_format
        self._logger = get_logger('sessions')

        self.cookies_dir.mkdir(parents=True, exist_ok=True)

    def cookie_path(self, domain: str, fmt: Optional[CookieFormat] = None) -> Path:
        fmt = fmt or self.default_format
        return self.cookies_dir / f"{normalize_domain(domain)}{fmt.extension}"

    def has(self, domain: str, fmt: Optional[CookieFormat] = None) -> bool:
        """Check for stored cookies, in one format or any."""
        formats = [fmt] if fmt else list(CookieFormat)
        return any(self.cookie_path(domain, f).exists() for f in formats)

    async def save(
        self,
        domain: str,
        cookies: List[Cookie],
        fmt: Optional[CookieFormat] = None
    ) -> Path:
        """
        Persist a cookie set for a domain.

        Args:
            domain: Domain or URL the cookies belong to.
            cookies: Playwright-style cookie dicts.
            fmt: Serialization format, store default if omitted.

        Returns:
            Path of the written file.
        """
        fmt = fmt or self.default_format
        path = self.cookie_path(domain, fmt)

        if fmt is CookieFormat.JSON:
            payload = json.dumps(cookies, indent=2, ensure_ascii=False)
        else:
            payload = cookies_to_netscape(cookies)

        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(payload)
        tmp_path.replace(path)

        self._logger.debug(f"Saved {len(cookies)} cookies for {domain} -> {path.name}")
        return path

    async def load(self, domain: str, fmt: Optional[CookieFormat] = None) -> Optional[List[Cookie]]:
        """
        Load cookies for a domain.

        Without an explicit format the default format is tried first, then
        the other one.

        Raises:
            SessionStoreError: If a cookie file exists but cannot be parsed.
        """
        formats = [fmt] if fmt else [self.default_format] + [
            f for f in CookieFormat if f is not self.default_format
        ]

        for candidate in formats:
            path = self.cookie_path(domain, candidate)
            if not path.exists():
                continue

            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                text = await f.read()

            if candidate is CookieFormat.JSON:
                try:
                    cookies = json.loads(text)
                except ValueError as e:
                    raise SessionStoreError(f"Corrupt cookie file {path}: {e}") from e
                if not isinstance(cookies, list):
                    raise SessionStoreError(f"Corrupt cookie file {path}: expected a list")
                return cookies
            return netscape_to_cookies(text)

        return None

    def delete(self, domain: str) -> bool:
        """Remove stored cookies in every format. True if anything was removed."""
        removed = False
        for fmt in CookieFormat:
            path = self.cookie_path(domain, fmt)
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            self._logger.info(f"Deleted cookies for {domain}")
        return removed

    async def convert(self, domain: str, target: CookieFormat) -> bool:
        """
        Write the domain's cookies in ``target`` format from the other format.

        Returns:
            False if no source file exists.
        """
        sources = [f for f in CookieFormat if f is not target]
        for source in sources:
            cookies = await self.load(domain, source)
            if cookies is not None:
                await self.save(domain, cookies, target)
                self._logger.debug(f"Converted cookies for {domain}: {source.value} -> {target.value}")
                return True
        return False
