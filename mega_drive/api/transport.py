"""
Transport protocol definition.

The core never talks HTTP directly: the dispatcher and the transfer engine
consume this interface, so the HTTP client can be swapped for an in-memory
fake in tests or for another network stack.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """
    Abstract exchange of command batches and content bytes.

    Implementations handle connection management, TLS and network-level
    failures, raising TransportError for anything they cannot deliver.
    """

    async def send_batch(self, payload: list[dict[str, Any]], params: dict[str, Any]) -> Any:
        """
        Send one command batch.

        Args:
            payload: Commands in submission order.
            params: Query parameters (sequence id, session id).

        Returns:
            The decoded response: a list with one entry per command, or a
            single integer error code for the whole batch.

        Raises:
            TransportError: If the batch could not be exchanged.
        """
        ...

    async def fetch_bytes(self, url: str, byte_range: tuple[int, int]) -> bytes:
        """
        Fetch a ciphertext range.

        Args:
            url: Storage URL returned by the download locator command.
            byte_range: Inclusive (start, end) offsets.

        Returns:
            Exactly end - start + 1 bytes.

        Raises:
            TransportError: If the range could not be fetched.
        """
        ...

    async def send_bytes(self, url: str, byte_range: tuple[int, int], data: bytes) -> str:
        """
        Send a ciphertext range to storage.

        Args:
            url: Storage URL returned by the upload locator command.
            byte_range: Inclusive (start, end) offsets of data in the file.
            data: Ciphertext.

        Returns:
            The storage server's response body; after the last chunk this
            is the completion handle.

        Raises:
            TransportError: If the range could not be sent.
        """
        ...
