"""
Async HTTP transport for the MEGA API.

Implements the Transport protocol on top of httpx: command batches are
posted to ``/cs``, content ranges go straight to the storage URLs handed
out by the download and upload locator commands.
"""

import asyncio
import json
from typing import Any

import httpx
import structlog

from mega_drive.config import MegaDriveConfig
from mega_drive.crypto.hashcash import parse_challenge, solve_hashcash
from mega_drive.exceptions import TransportError

logger = structlog.get_logger(__name__)

SENSITIVE_KEYS = frozenset(
    {
        "k",
        "key",
        "privk",
        "pubk",
        "csid",
        "tsid",
        "sid",
        "uh",
        "sk",
        "ok",
        "attr",
    }
)

# "a" is the opcode at the top level of a command, an attribute blob inside nodes.
_NESTED_SENSITIVE_KEYS = SENSITIVE_KEYS | {"a"}

HASHCASH_HEADER = "X-Hashcash"


def sanitize_for_log(data: dict[str, Any], *, _nested: bool = False) -> dict[str, Any]:
    """
    Remove key material from a command or response before logging.

    Recursively sanitizes nested dictionaries and lists.

    Args:
        data: Dictionary that may contain sensitive values.

    Returns:
        Copy with sensitive values replaced by "***".
    """
    sensitive = _NESTED_SENSITIVE_KEYS if _nested else SENSITIVE_KEYS
    result = {}
    for key, value in data.items():
        if key in sensitive:
            result[key] = "***"
        elif isinstance(value, dict):
            result[key] = sanitize_for_log(value, _nested=True)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_log(item, _nested=True) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


class AsyncHttpClient:
    """Async HTTP client for the MEGA command API and storage servers."""

    def __init__(
        self,
        config: MegaDriveConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            config: Client configuration.
            transport: Optional transport for testing (mock transport).
        """
        self._config = config
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._users = 0

    async def __aenter__(self) -> "AsyncHttpClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self._config.api_url,
                    timeout=self._config.timeout,
                    transport=self._transport,
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": self._config.user_agent,
                    },
                )
            self._users += 1
        return self._client

    async def _close(self) -> None:
        """Close the HTTP client once the last context manager exits."""
        async with self._client_lock:
            if self._client is None:
                logger.debug("Client not open")
                return
            self._users -= 1
            if self._users > 0:
                logger.debug("Skipping close, client still in use", users=self._users)
                return
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "HTTP client not initialized. Use 'async with' first."
            raise RuntimeError(msg)
        return self._client

    async def send_batch(self, payload: list[dict[str, Any]], params: dict[str, Any]) -> Any:
        """
        Post a command batch to ``/cs``.

        A 402 answer carrying a hashcash challenge is solved and the same
        batch (same sequence id) is posted once more with the stamp.

        Returns:
            Decoded JSON response: a list of per-command results or an int.

        Raises:
            TransportError: On network failure, HTTP error or invalid JSON.
        """
        client = self._require_client()
        logger.debug(
            "API request",
            sequence=params.get("id"),
            commands=[sanitize_for_log(command) for command in payload],
        )

        response = await self._post_batch(client, payload, params)
        if response.status_code == httpx.codes.PAYMENT_REQUIRED:
            challenge = response.headers.get(HASHCASH_HEADER)
            if challenge is None or not self._config.solve_hashcash:
                msg = "Server requires proof of work"
                raise TransportError(msg, status=response.status_code, sequence=params.get("id"))
            token, easiness = parse_challenge(challenge)
            logger.info("Solving hashcash challenge", easiness=easiness)
            stamp = await asyncio.to_thread(solve_hashcash, token, easiness)
            response = await self._post_batch(
                client, payload, params, headers={HASHCASH_HEADER: stamp}
            )
            if response.status_code == httpx.codes.PAYMENT_REQUIRED:
                msg = "Hashcash stamp rejected"
                raise TransportError(msg, status=response.status_code, sequence=params.get("id"))

        if response.is_error:
            msg = f"API returned HTTP {response.status_code}"
            raise TransportError(msg, status=response.status_code, sequence=params.get("id"))

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            msg = "Invalid JSON response from API"
            raise TransportError(msg, sequence=params.get("id")) from e

    async def _post_batch(
        self,
        client: httpx.AsyncClient,
        payload: list[dict[str, Any]],
        params: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await client.post("/cs", json=payload, params=params, headers=headers)
        except httpx.TimeoutException as e:
            msg = "API request timed out"
            raise TransportError(msg, sequence=params.get("id")) from e
        except httpx.HTTPError as e:
            msg = f"API request failed: {type(e).__name__}"
            raise TransportError(msg, sequence=params.get("id")) from e

    async def fetch_bytes(self, url: str, byte_range: tuple[int, int]) -> bytes:
        """
        Download a ciphertext range from a storage server.

        Security:
            Only pass URLs obtained from the download locator command.
            NEVER pass user-supplied input directly to this method.

        Raises:
            TransportError: If the request fails or returns a short body.
        """
        client = self._require_client()
        start, end = byte_range
        target = f"{self._storage_url(url)}/{start}-{end}"
        try:
            response = await client.get(target, timeout=self._config.transfer_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            msg = f"Content fetch failed: {type(e).__name__}"
            raise TransportError(msg, start=start, end=end) from e

        expected = end - start + 1
        if len(response.content) != expected:
            msg = "Storage server returned a short range"
            raise TransportError(
                msg, start=start, expected=expected, received=len(response.content)
            )
        return response.content

    async def send_bytes(self, url: str, byte_range: tuple[int, int], data: bytes) -> str:
        """
        Upload a ciphertext range to a storage server.

        Security:
            Only pass URLs obtained from the upload locator command.

        Returns:
            Response body; the completion handle after the last chunk.

        Raises:
            TransportError: If the request fails.
        """
        client = self._require_client()
        start, _ = byte_range
        target = f"{self._storage_url(url)}/{start}"
        try:
            response = await client.post(
                target,
                content=data,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self._config.transfer_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            msg = f"Content upload failed: {type(e).__name__}"
            raise TransportError(msg, start=start, size=len(data)) from e
        return response.text

    def _storage_url(self, url: str) -> str:
        if self._config.use_https_transfers and url.startswith("http://"):
            return "https://" + url.removeprefix("http://")
        return url
