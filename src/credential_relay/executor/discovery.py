from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..core.errors import SourceUnavailable
from ..core.logging import get_logger
from ..core.models import ConnectionTarget

logger = get_logger(__name__)

_WEB_URL_RE = re.compile(r"https://([^.]+)\.github\.dev")


def _to_duplex(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def _last_used(remote: Dict[str, Any]) -> float:
    value = remote.get("last_used_at")
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class CodespacesDiscovery:
    """Enumerates the user's running remote sandboxes and their executor endpoints."""

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        get_credential: Optional[Callable[[], Optional[str]]] = None,
        port: int = 4002,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.port = port
        self.timeout = timeout
        self._get_credential = get_credential or (lambda: None)
        self._transport = transport

    # PUBLIC_INTERFACE
    def available(self) -> bool:
        """Discovery needs a credential for the discovery API."""
        return bool(self._get_credential())

    async def _get(self, client: httpx.AsyncClient, path: str) -> Dict[str, Any]:
        try:
            resp = await client.get(self.api_url + path)
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"discovery request {path} failed: {type(exc).__name__}", cause=exc) from exc
        if resp.status_code >= 400:
            raise SourceUnavailable(f"discovery request {path} returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceUnavailable(f"discovery request {path} returned a non-JSON body", cause=exc) from exc

    async def _forwarded_url(self, client: httpx.AsyncClient, name: str) -> Optional[str]:
        try:
            data = await self._get(client, f"/user/codespaces/{name}/ports")
        except SourceUnavailable as exc:
            logger.info("Could not read forwarded ports for %s: %s", name, exc.message)
            return None
        for port in data.get("ports") or []:
            if port.get("port") == self.port and port.get("url"):
                return _to_duplex(str(port["url"]))
        return None

    def _fallback_url(self, remote: Dict[str, Any]) -> Optional[str]:
        match = _WEB_URL_RE.match(str(remote.get("web_url") or ""))
        if not match:
            return None
        return f"wss://{match.group(1)}-{self.port}.app.github.dev"

    # PUBLIC_INTERFACE
    async def discover(self) -> List[ConnectionTarget]:
        """Running remotes exposing a duplex endpoint, best candidate first.

        Forwarded executor ports rank ahead of derived URLs; ties go to the most
        recently used remote. Returns [] when discovery is unavailable or fails.
        """
        credential = self._get_credential()
        if not credential:
            return []
        headers = {"Authorization": f"Bearer {credential}", "Accept": "application/vnd.github+json"}
        ranked: List[Tuple[bool, float, ConnectionTarget]] = []
        async with httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self._transport) as client:
            try:
                data = await self._get(client, "/user/codespaces")
            except SourceUnavailable as exc:
                logger.warning("Remote discovery failed: %s", exc.message)
                return []

            for remote in data.get("codespaces") or []:
                if remote.get("state") != "Available" or not remote.get("name"):
                    continue
                name = str(remote["name"])
                url = await self._forwarded_url(client, name)
                forwarded = url is not None
                url = url or self._fallback_url(remote)
                if not url:
                    continue
                target = ConnectionTarget(
                    type="remote",
                    url=url,
                    name=remote.get("display_name") or name,
                    remote_id=name,
                )
                ranked.append((forwarded, _last_used(remote), target))

        ranked.sort(key=lambda item: (not item[0], -item[1]))
        logger.info("Discovered %d remote executor candidate(s)", len(ranked))
        return [target for _, _, target in ranked]
