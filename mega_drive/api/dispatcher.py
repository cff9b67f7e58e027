"""
Command dispatcher.

Commands are submitted into an open batch, each under its own sequence
number, and sent together on flush. The server answers with an array whose
positions are the only link to the commands, so responses are demultiplexed
strictly by position and any length or shape mismatch fails the batch.
"""

import asyncio
import secrets
import threading
from enum import StrEnum
from typing import Any, Protocol

import structlog

from mega_drive.api.commands import command_error_for, decode_result, error_name, is_error_code
from mega_drive.api.transport import Transport
from mega_drive.config import MegaDriveConfig
from mega_drive.exceptions import (
    BatchCancelledError,
    CommandError,
    DispatchError,
    ResponseMismatchError,
    SequenceDesyncError,
    TransportError,
    TruncatedResponseError,
)
from mega_drive.models.commands import Command, CommandResult

logger = structlog.get_logger(__name__)

_SEQUENCE_SPACE = 2**32


class SequenceCounter:
    """
    Per-session, strictly increasing sequence numbers.

    The only mutable state shared between workers of a session, so every
    increment happens under a lock. The API accepts whatever id the client
    starts from, so a session begins at a random offset unless one is given.
    """

    def __init__(self, start: int | None = None) -> None:
        if start is None:
            start = secrets.randbelow(_SEQUENCE_SPACE)
        if start < 0:
            msg = "Sequence start must be non-negative"
            raise ValueError(msg)
        self._next = start
        self._last: int | None = None
        self._lock = threading.Lock()

    @property
    def last(self) -> int | None:
        """Last number handed out, None if none yet."""
        with self._lock:
            return self._last

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            self._last = value
            return value


class SessionContext(Protocol):
    """What the dispatcher needs from the session owner."""

    @property
    def sequence(self) -> SequenceCounter: ...

    @property
    def session_id(self) -> str | None: ...


class HandleState(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    DONE = "done"
    CANCELLED = "cancelled"


class PendingHandle:
    """
    Completion handle for one submitted command.

    Cancellation is only possible while the batch is unsent; afterwards the
    handle always waits for the server's answer (or a timeout).
    """

    def __init__(self, command: Command, sequence: int, *, idempotent: bool) -> None:
        self.command = command
        self.sequence = sequence
        self.idempotent = idempotent
        self.attempts = 0
        self._state = HandleState.PENDING
        self._result: CommandResult | None = None
        self._error: Exception | None = None
        self._done = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"PendingHandle(opcode={self.command.opcode.value!r}, "
            f"sequence={self.sequence}, state={self._state.value})"
        )

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state in (HandleState.DONE, HandleState.CANCELLED)

    def cancel(self) -> bool:
        """
        Withdraw the command from its batch.

        Returns:
            True if cancelled, False if the batch was already sent.
        """
        if self._state is not HandleState.PENDING:
            return self._state is HandleState.CANCELLED
        self._state = HandleState.CANCELLED
        self._error = BatchCancelledError(
            "Command cancelled before flush",
            opcode=self.command.opcode.value,
            sequence=self.sequence,
        )
        self._done.set()
        return True

    def result(self) -> CommandResult:
        """
        Result of the command.

        Raises:
            DispatchError: If the command failed, was cancelled or is not flushed yet.
        """
        if not self.done:
            msg = "Command has not been flushed"
            raise DispatchError(msg, opcode=self.command.opcode.value, sequence=self.sequence)
        if self._error is not None:
            raise self._error
        return self._result

    @property
    def error(self) -> Exception | None:
        return self._error

    async def wait(self) -> CommandResult:
        await self._done.wait()
        return self.result()

    def _mark_sent(self) -> None:
        self._state = HandleState.SENT
        self.attempts += 1

    def _resequence(self, sequence: int) -> None:
        self.sequence = sequence

    def _resolve(self, result: CommandResult) -> None:
        self._result = result
        self._state = HandleState.DONE
        self._done.set()

    def _fail(self, error: Exception) -> None:
        self._error = error
        self._state = HandleState.DONE
        self._done.set()


class CommandDispatcher:
    """
    Sequences, batches and retries commands for one session.

    Submission never blocks. Flushes are serialized, so sequence assignment
    of two batches never interleaves on the wire.

    Retry policy:
    - transient per-command codes (EAGAIN, ERATELIMIT, ETEMPUNAVAIL) on
      idempotent commands are resent in a new batch under fresh sequence
      numbers, with exponential backoff, up to config.max_retries times
    - transport failures and timeouts are handled the same way, because the
      effect of an unanswered command is unknown
    - non-idempotent commands are never resent; callers confirm the effect
      and resubmit themselves
    - every other code is surfaced immediately
    """

    def __init__(
        self,
        transport: Transport,
        session: SessionContext,
        config: MegaDriveConfig | None = None,
    ) -> None:
        self._transport = transport
        self._session = session
        self._config = config or MegaDriveConfig()

        self._open: list[PendingHandle] = []
        self._flush_lock = asyncio.Lock()
        self._last_sent: int | None = None
        self._poisoned: SequenceDesyncError | None = None

    @property
    def pending_count(self) -> int:
        return sum(1 for h in self._open if h.state is HandleState.PENDING)

    @property
    def is_poisoned(self) -> bool:
        return self._poisoned is not None

    def submit(self, command: Command, *, idempotent: bool | None = None) -> PendingHandle:
        """
        Queue a command in the open batch under the next sequence number.

        Args:
            command: Command to send.
            idempotent: Override command.idempotent.

        Returns:
            Handle resolved by the next flush.
        """
        if self._poisoned is not None:
            raise self._poisoned
        flag = command.idempotent if idempotent is None else idempotent
        handle = PendingHandle(command, self._session.sequence.next(), idempotent=flag)
        self._open.append(handle)
        return handle

    async def flush(self) -> list[CommandResult | DispatchError]:
        """
        Send the open batch and deliver results by position.

        Returns:
            One entry per non-cancelled command, in submission order: the
            decoded result, or the error that command failed with (usually
            the CommandError the server answered).

        Raises:
            TruncatedResponseError: If the server answered fewer entries than sent.
            ResponseMismatchError: If an entry does not fit its command.
            SequenceDesyncError: If sequence numbering broke; the dispatcher is unusable afterwards.
            TransportError: If the batch could not be exchanged.
        """
        async with self._flush_lock:
            if self._poisoned is not None:
                raise self._poisoned

            batch = [h for h in self._open if h.state is HandleState.PENDING]
            self._open = []
            if not batch:
                return []

            try:
                await self._exchange(batch)
            except DispatchError as e:
                if isinstance(e, SequenceDesyncError):
                    self._poisoned = e
                for handle in batch:
                    if not handle.done:
                        handle._fail(e)
                raise
            except BaseException as e:
                for handle in batch:
                    if not handle.done:
                        handle._fail(e)
                raise

            return [h.error if h.error is not None else h._result for h in batch]

    async def execute(self, command: Command, *, idempotent: bool | None = None) -> CommandResult:
        """Submit a single command, flush, and return its result (or raise its error)."""
        handle = self.submit(command, idempotent=idempotent)
        await self.flush()
        return await handle.wait()

    async def _exchange(self, batch: list[PendingHandle]) -> None:
        pending = batch
        attempt = 0
        while pending:
            attempt += 1
            if attempt > 1:
                for handle in pending:
                    handle._resequence(self._session.sequence.next())
            self._check_monotonic(pending)

            for handle in pending:
                handle._mark_sent()

            try:
                raw = await self._send(pending)
            except TransportError as e:
                pending = self._after_transport_failure(pending, e, attempt)
            else:
                pending = self._demultiplex(pending, raw, attempt)

            if pending:
                delay = self._config.backoff_delay(attempt)
                logger.warning(
                    "Retrying commands",
                    count=len(pending),
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)

    def _check_monotonic(self, pending: list[PendingHandle]) -> None:
        if self._last_sent is not None and pending[0].sequence <= self._last_sent:
            # Submitted before a retry of an earlier batch consumed newer numbers.
            for handle in pending:
                handle._resequence(self._session.sequence.next())
        previous = self._last_sent
        for handle in pending:
            if previous is not None and handle.sequence <= previous:
                msg = "Sequence numbers are not strictly increasing"
                raise SequenceDesyncError(msg, sequence=handle.sequence, last=previous)
            previous = handle.sequence

    async def _send(self, pending: list[PendingHandle]) -> Any:
        params: dict[str, Any] = {"id": pending[0].sequence}
        session_id = self._session.session_id
        if session_id:
            params["sid"] = session_id

        payload = [h.command.to_wire() for h in pending]
        self._last_sent = pending[-1].sequence
        logger.debug(
            "Batch sent",
            sequence=pending[0].sequence,
            size=len(pending),
            opcodes=[h.command.opcode.value for h in pending],
        )
        try:
            return await asyncio.wait_for(
                self._transport.send_batch(payload, params),
                timeout=self._config.timeout,
            )
        except TimeoutError as e:
            msg = "Batch timed out"
            raise TransportError(msg, sequence=pending[0].sequence) from e

    def _after_transport_failure(
        self, pending: list[PendingHandle], error: TransportError, attempt: int
    ) -> list[PendingHandle]:
        logger.warning("Batch transport failure", error=str(error), attempt=attempt)
        if attempt > self._config.max_retries:
            raise error
        retry = [h for h in pending if h.idempotent]
        if not retry:
            raise error
        for handle in pending:
            if not handle.idempotent:
                handle._fail(error)
        return retry

    def _demultiplex(
        self, pending: list[PendingHandle], raw: Any, attempt: int
    ) -> list[PendingHandle]:
        first = pending[0].sequence

        if is_error_code(raw):
            # The whole request was rejected; nothing was executed.
            entries = [raw] * len(pending)
        elif isinstance(raw, list):
            if len(raw) < len(pending):
                msg = "Response array shorter than batch"
                raise TruncatedResponseError(
                    msg, sequence=first, expected=len(pending), received=len(raw)
                )
            if len(raw) > len(pending):
                msg = "Response array longer than batch"
                raise ResponseMismatchError(
                    msg, sequence=first, expected=len(pending), received=len(raw)
                )
            entries = raw
        else:
            msg = f"Unexpected {type(raw).__name__} response to batch"
            raise ResponseMismatchError(msg, sequence=first)

        decoded: list[CommandResult | CommandError] = []
        for handle, entry in zip(pending, entries, strict=True):
            if is_error_code(entry):
                decoded.append(
                    command_error_for(
                        entry, opcode=handle.command.opcode.value, sequence=handle.sequence
                    )
                )
                continue
            try:
                decoded.append(decode_result(handle.command.opcode, entry))
            except ResponseMismatchError as e:
                msg = f"Response position {len(decoded)} does not match its command"
                raise ResponseMismatchError(
                    msg, opcode=handle.command.opcode.value, sequence=handle.sequence
                ) from e

        retry = []
        for handle, outcome in zip(pending, decoded, strict=True):
            if not isinstance(outcome, CommandError):
                handle._resolve(outcome)
            elif outcome.is_transient and handle.idempotent and attempt <= self._config.max_retries:
                logger.debug(
                    "Transient command error",
                    opcode=handle.command.opcode.value,
                    sequence=handle.sequence,
                    code=error_name(outcome.code),
                )
                retry.append(handle)
            else:
                handle._fail(outcome)
        return retry
