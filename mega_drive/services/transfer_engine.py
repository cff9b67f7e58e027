"""
Chunked transfer engine.

Content is encrypted with AES-CTR and authenticated with a two-level MAC
whose value depends on where chunks start and end, so uploads and
downloads must both follow the same schedule: 128 KiB, 256 KiB, ... up to
1 MiB, then 1 MiB chunks.

Cipher and MAC state are explicit values threaded from chunk to chunk;
after each chunk the engine can emit a TransferState checkpoint that is
enough to resume from the next chunk.
"""

import asyncio
import hmac
from collections.abc import AsyncIterable, AsyncIterator, Callable

import structlog

from mega_drive.api.transport import Transport
from mega_drive.crypto.aes import stream_cipher_transform
from mega_drive.crypto.mac import mac_finalize, mac_update
from mega_drive.exceptions import (
    IntegrityFailureError,
    KeyFormatError,
    TransferCancelledError,
    TransferError,
    TransportError,
    UploadError,
)
from mega_drive.models.crypto import CounterState, FileKey, MacState
from mega_drive.models.drive import TransferChunk, TransferState, UploadResult

logger = structlog.get_logger(__name__)

CHUNK_STEP = 128 * 1024
MAX_CHUNK_SIZE = 1024 * 1024
_GROWING_CHUNKS = MAX_CHUNK_SIZE // CHUNK_STEP
_GROWING_TOTAL = CHUNK_STEP * _GROWING_CHUNKS * (_GROWING_CHUNKS + 1) // 2

Checkpoint = Callable[[TransferState], None]


def chunk_offset(chunk_index: int) -> int:
    """Offset of the first byte of chunk_index in an unbounded schedule."""
    if chunk_index < 0:
        msg = "chunk_index must be non-negative"
        raise ValueError(msg)
    if chunk_index <= _GROWING_CHUNKS:
        return CHUNK_STEP * chunk_index * (chunk_index + 1) // 2
    return _GROWING_TOTAL + (chunk_index - _GROWING_CHUNKS) * MAX_CHUNK_SIZE


def chunk_schedule(size: int, nonce: bytes) -> list[TransferChunk]:
    """
    Partition a file of size bytes into transfer chunks.

    A zero-byte file has no chunks.
    """
    if size < 0:
        msg = "size must be non-negative"
        raise ValueError(msg)
    chunks = []
    offset = 0
    index = 0
    while offset < size:
        length = min(CHUNK_STEP * (index + 1), MAX_CHUNK_SIZE, size - offset)
        counter = CounterState(nonce, offset)
        chunks.append(TransferChunk(index=index, offset=offset, size=length, counter=counter))
        offset += length
        index += 1
    return chunks


def counter_state_at(chunk_index: int, nonce: bytes) -> CounterState:
    """Keystream state at the start of chunk_index, without replaying earlier chunks."""
    return CounterState(nonce, chunk_offset(chunk_index))


class TransferEngine:
    """
    Streams file content through the chunk schedule.

    Holds no per-transfer state, so one engine serves concurrent transfers
    of different files.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    def plan(self, size: int, file_key: FileKey) -> list[TransferChunk]:
        return chunk_schedule(size, file_key.nonce)

    def counter_state_at(self, chunk_index: int, file_key: FileKey) -> CounterState:
        return counter_state_at(chunk_index, file_key.nonce)

    def initial_state(self, file_key: FileKey) -> TransferState:
        return TransferState(chunk_index=0, counter=CounterState(file_key.nonce), mac=MacState())

    async def download(
        self,
        url: str,
        size: int,
        file_key: FileKey,
        *,
        node_id: str | None = None,
        resume_from: TransferState | None = None,
        cancel: asyncio.Event | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> AsyncIterator[bytes]:
        """
        Fetch, decrypt and verify a file, one chunk at a time.

        The MAC is verified after the last chunk: a consumer must not treat
        the output as valid until the iteration finishes without error.

        Args:
            url: Storage URL from the download locator.
            size: Content size in bytes.
            file_key: Key of the file, meta-MAC included.
            node_id: Node being downloaded, for error context.
            resume_from: Checkpoint to continue from.
            cancel: Event checked at every chunk boundary.
            checkpoint: Called with the state after every chunk.

        Yields:
            Plaintext chunks in order.

        Raises:
            IntegrityFailureError: If the computed MAC differs from the key's meta-MAC.
            TransferCancelledError: If cancel was set.
            TransferError: If a chunk could not be fetched.
        """
        if file_key.meta_mac is None:
            msg = "Download requires the file's meta-MAC"
            raise KeyFormatError(msg)

        chunks = self.plan(size, file_key)
        state = self._validated_resume(resume_from, file_key, len(chunks), node_id)
        logger.debug(
            "Download started",
            node_id=node_id,
            size=size,
            chunks=len(chunks),
            resume_chunk=state.chunk_index,
        )

        for chunk in chunks[state.chunk_index :]:
            _check_cancel(cancel, node_id, chunk.index)
            try:
                ciphertext = await self._transport.fetch_bytes(url, chunk.byte_range)
            except TransportError as e:
                msg = "Chunk download failed"
                raise TransferError(msg, node_id=node_id, chunk_index=chunk.index) from e
            if len(ciphertext) != chunk.size:
                msg = "Chunk has an unexpected length"
                raise TransferError(
                    msg, node_id=node_id, chunk_index=chunk.index, received=len(ciphertext)
                )

            plaintext, counter = stream_cipher_transform(
                ciphertext, file_key.aes_key, state.counter
            )
            state = TransferState(
                chunk_index=chunk.index + 1,
                counter=counter,
                mac=mac_update(state.mac, plaintext, file_key),
            )
            if checkpoint is not None:
                checkpoint(state)
            yield plaintext

        computed = mac_finalize(state.mac)
        if not hmac.compare_digest(computed, file_key.meta_mac):
            msg = "File MAC mismatch"
            raise IntegrityFailureError(msg, node_id=node_id, chunk_index=len(chunks) - 1)
        logger.debug("Download verified", node_id=node_id, size=size)

    async def upload(
        self,
        url: str,
        source: bytes | AsyncIterable[bytes],
        size: int,
        file_key: FileKey,
        *,
        cancel: asyncio.Event | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> UploadResult:
        """
        Encrypt and send content, accumulating the MAC.

        The source may be cut anywhere; it is re-chunked along the schedule.

        Args:
            url: Storage URL from the upload locator.
            source: Plaintext bytes or an async iterable of byte buffers.
            size: Exact total size of source.
            file_key: Fresh key and nonce for the file.
            cancel: Event checked at every chunk boundary.
            checkpoint: Called with the state after every chunk.

        Returns:
            Completion handle and the file key completed with its meta-MAC.

        Raises:
            UploadError: If the source size is wrong or storage rejects a chunk.
            TransferCancelledError: If cancel was set.
            TransferError: If a chunk could not be sent.
        """
        chunks = self.plan(size, file_key)
        state = self.initial_state(file_key)
        reader = _ChunkReader(_iter_source(source))
        completion = ""
        logger.debug("Upload started", size=size, chunks=len(chunks))

        if not chunks:
            completion = await self._send(url, (0, -1), b"", 0)

        for chunk in chunks:
            _check_cancel(cancel, None, chunk.index)
            plaintext = await reader.read(chunk.size)
            if len(plaintext) != chunk.size:
                msg = "Source ended before the declared size"
                raise UploadError(msg, chunk_index=chunk.index, expected=size)

            ciphertext, counter = stream_cipher_transform(
                plaintext, file_key.aes_key, state.counter
            )
            state = TransferState(
                chunk_index=chunk.index + 1,
                counter=counter,
                mac=mac_update(state.mac, plaintext, file_key),
            )
            completion = await self._send(url, chunk.byte_range, ciphertext, chunk.index)
            if checkpoint is not None:
                checkpoint(state)

        if await reader.read(1):
            msg = "Source is longer than the declared size"
            raise UploadError(msg, expected=size)

        if not completion:
            msg = "Storage server returned no completion handle"
            raise UploadError(msg, chunk_index=len(chunks) - 1 if chunks else None)

        meta_mac = mac_finalize(state.mac)
        logger.debug("Upload finished", size=size)
        return UploadResult(
            completion_handle=completion,
            file_key=file_key.with_meta_mac(meta_mac),
            size=size,
        )

    async def _send(self, url: str, byte_range: tuple[int, int], data: bytes, index: int) -> str:
        try:
            body = await self._transport.send_bytes(url, byte_range, data)
        except TransportError as e:
            msg = "Chunk upload failed"
            raise TransferError(msg, chunk_index=index) from e
        body = body.strip()
        if _is_error_body(body):
            msg = "Storage server rejected chunk"
            raise UploadError(msg, chunk_index=index, code=int(body))
        return body

    def _validated_resume(
        self,
        state: TransferState | None,
        file_key: FileKey,
        chunk_count: int,
        node_id: str | None,
    ) -> TransferState:
        if state is None:
            return self.initial_state(file_key)
        if state.chunk_index > chunk_count:
            msg = "Resume point is past the end of the file"
            raise TransferError(msg, node_id=node_id, chunk_index=state.chunk_index)
        expected = self.counter_state_at(state.chunk_index, file_key)
        if state.chunk_index < chunk_count and state.counter != expected:
            msg = "Resume counter does not match the chunk schedule"
            raise TransferError(msg, node_id=node_id, chunk_index=state.chunk_index)
        return state


def _check_cancel(cancel: asyncio.Event | None, node_id: str | None, chunk_index: int) -> None:
    if cancel is not None and cancel.is_set():
        msg = "Transfer cancelled"
        raise TransferCancelledError(msg, node_id=node_id, chunk_index=chunk_index)


def _is_error_body(body: str) -> bool:
    return body.startswith("-") and body[1:].isdigit()


async def _iter_source(source: bytes | AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
        return
    async for block in source:
        yield block


class _ChunkReader:
    """Re-cuts an async stream of buffers into exact lengths."""

    def __init__(self, blocks: AsyncIterator[bytes]) -> None:
        self._blocks = blocks
        self._buffer = bytearray()
        self._exhausted = False

    async def read(self, length: int) -> bytes:
        while len(self._buffer) < length and not self._exhausted:
            try:
                self._buffer += await anext(self._blocks)
            except StopAsyncIteration:
                self._exhausted = True
        data = bytes(self._buffer[:length])
        del self._buffer[:length]
        return data
