from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)

USER_AGENT = f"agentskills/{__version__}"


class AgentSkillsError(RuntimeError):
    code = "INSTALL_FAILED"


@dataclass(frozen=True)
class AgentSkillsHTTPError(AgentSkillsError):
    status_code: int
    body: str
    url: str = ""

    code = "FETCH_FAILED"

    def __str__(self) -> str:
        where = f" for {self.url}" if self.url else ""
        body = self.body.strip()
        if len(body) > 200:
            body = body[:200] + "..."
        return f"HTTP {self.status_code}{where}: {body}" if body else f"HTTP {self.status_code}{where}"


def _host(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


class HttpClient:
    """
    Thin async wrapper around httpx used by the fetch providers.

    Tokens are attached per host so a GitHub token never leaks to a tarball CDN.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        host_tokens: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._host_tokens = {k.lower(): v for k, v in (host_tokens or {}).items() if v}
        self._http = httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self, url: str, headers: dict[str, str] | None) -> dict[str, str]:
        out = dict(headers or {})
        token = self._host_tokens.get(_host(url))
        if token and "Authorization" not in out:
            out["Authorization"] = f"Bearer {token}"
        return out

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        logger.debug("%s %s", method.upper(), url)
        try:
            resp = await self._http.request(method.upper(), url, params=params, headers=self._headers(url, headers))
        except httpx.TimeoutException as e:
            raise AgentSkillsError(f"Request timed out after {self.timeout_s}s: {url}") from e
        except httpx.HTTPError as e:
            raise AgentSkillsError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise AgentSkillsHTTPError(resp.status_code, resp.text, url)
        return resp

    async def get_json(self, url: str, *, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> Any:
        req_headers = {"Accept": "application/json"}
        req_headers.update(headers or {})
        resp = await self.request("GET", url, params=params, headers=req_headers)
        try:
            return resp.json()
        except ValueError as e:
            raise AgentSkillsError(f"Expected JSON from {url}") from e

    async def get_text(self, url: str, *, headers: dict[str, str] | None = None) -> str:
        resp = await self.request("GET", url, headers=headers)
        return resp.text

    async def download(self, url: str, dest: Path, *, headers: dict[str, str] | None = None) -> int:
        """Stream ``url`` into ``dest`` and return the number of bytes written."""
        logger.debug("GET %s -> %s", url, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        size = 0
        try:
            async with self._http.stream("GET", url, headers=self._headers(url, headers)) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise AgentSkillsHTTPError(resp.status_code, body, url)
                with dest.open("wb") as out:
                    async for chunk in resp.aiter_bytes():
                        out.write(chunk)
                        size += len(chunk)
        except httpx.TimeoutException as e:
            raise AgentSkillsError(f"Download timed out after {self.timeout_s}s: {url}") from e
        except httpx.HTTPError as e:
            raise AgentSkillsError(f"Download failed: {e}") from e
        return size
