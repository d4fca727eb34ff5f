"""Ephemeral credential fetch (opaque GET against the key-minting endpoint)."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

log = logging.getLogger("voice_session.credentials")


class CredentialSource(Protocol):
    async def fetch(self) -> Optional[str]: ...


class HttpCredentialProvider:
    """GET `url` → {"client_secret": {"value": "..."}} (or a bare {"value": "..."}).

    `fetch()` returns None when the collaborator answers without a secret or
    cannot be reached; the caller decides what absence means.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._timeout_sec = timeout_sec
        self._client = client

    async def fetch(self) -> Optional[str]:
        log.info("event=credential_request url=%s", self.url)
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self._timeout_sec)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                    response = await client.get(self.url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.error("event=credential_fetch_failed url=%s error=%s", self.url, exc)
            return None

        secret = extract_secret(data)
        if secret is None:
            log.error("event=credential_missing url=%s keys=%s", self.url, sorted(data) if isinstance(data, dict) else type(data).__name__)
            return None
        log.info("event=credential_received")
        return secret


def extract_secret(data: object) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    holder = data.get("client_secret", data)
    value = holder.get("value") if isinstance(holder, dict) else holder
    return value if isinstance(value, str) and value else None
