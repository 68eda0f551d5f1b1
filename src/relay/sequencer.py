"""Per-session chunk ordering, bounded concurrency and reorder buffer.

The sequencer is plain state owned by exactly one session actor and is
never touched concurrently, so it holds no locks and performs no I/O. The
actor asks it what to start, hands it completed results, and gets back the
results that may now be released in sequence order.

Flow of one chunk:

    admit() ──► queued ──► start_ready() ──► running ──► complete()
                  │                                         │
                  └── dropped (queue full, oldest first)    ▼
                                                     reorder buffer
                                                            │
                                        release in order ◄──┘
                                        (gaps: dropped or expired sequences)

Backpressure never blocks the broadcaster: when ``max_in_flight`` chunks are
running and ``max_queued`` are already waiting, the oldest waiting chunk is
dropped to make room for the newest one.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field

from src.relay.models import Chunk, TranslationResult

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    """Outcome of admitting one chunk.

    Attributes:
        chunk: The admitted chunk with its assigned sequence
        dropped: Older queued chunks dropped to make room
    """

    chunk: Chunk
    dropped: list[Chunk] = field(default_factory=list)


class ChunkSequencer:
    """Assigns sequence numbers and releases results in order.

    Args:
        session_id: Owning session
        max_in_flight: Maximum chunks processed concurrently (K)
        max_queued: Maximum chunks waiting for a processing slot (at least 1)
        reorder_timeout_s: Longest a buffered result waits for a lower
            sequence before the gap is given up on
    """

    def __init__(
        self,
        session_id: str,
        max_in_flight: int = 2,
        max_queued: int = 1,
        reorder_timeout_s: float = 8.0,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        if max_queued < 1:
            # With no queue slot the chunk being admitted would be its own victim
            raise ValueError(f"max_queued must be >= 1, got {max_queued}")

        self.session_id = session_id
        self.max_in_flight = max_in_flight
        self.max_queued = max_queued
        self.reorder_timeout_s = reorder_timeout_s

        self._next_sequence = 1
        self._release_watermark = 0
        self._queue: deque[Chunk] = deque()
        self._running: dict[int, Chunk] = {}
        self._buffer: dict[int, TranslationResult] = {}
        self._buffered_at: dict[int, float] = {}
        self._gaps: set[int] = set()
        self._abandoned: list[int] = []

        self.dropped_count = 0
        self.released_count = 0

    @property
    def next_sequence(self) -> int:
        """Sequence number the next admitted chunk will receive."""
        return self._next_sequence

    @property
    def release_watermark(self) -> int:
        """Highest sequence released (delivered or skipped) so far."""
        return self._release_watermark

    @property
    def in_flight(self) -> int:
        return len(self._running)

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def is_running(self, sequence: int) -> bool:
        return sequence in self._running

    def admit(
        self,
        payload: bytes,
        container: str = "unknown",
        received_at: float | None = None,
    ) -> Admission:
        """Assign the next sequence to a chunk and queue it.

        Args:
            payload: Decoded container bytes
            container: Container format name
            received_at: Monotonic receipt time (now when omitted)

        Returns:
            Admission with the new chunk and any chunks dropped for it
        """
        chunk = Chunk(
            session_id=self.session_id,
            sequence=self._next_sequence,
            payload=payload,
            container=container,
            received_at=received_at if received_at is not None else time.monotonic(),
        )
        self._next_sequence += 1
        self._queue.append(chunk)

        free_slots = max(0, self.max_in_flight - len(self._running))
        dropped: list[Chunk] = []
        while len(self._queue) > self.max_queued + free_slots:
            victim = self._queue.popleft()
            self._gaps.add(victim.sequence)
            self.dropped_count += 1
            dropped.append(victim)

        if dropped:
            logger.info(
                "Backpressure dropped queued chunks",
                extra={
                    "session_id": self.session_id,
                    "dropped": [c.sequence for c in dropped],
                    "in_flight": len(self._running),
                },
            )

        return Admission(chunk=chunk, dropped=dropped)

    def start_ready(self) -> list[Chunk]:
        """Move queued chunks into flight while slots are free.

        Returns:
            Chunks the caller must now start processing, in sequence order
        """
        started: list[Chunk] = []
        while self._queue and len(self._running) < self.max_in_flight:
            chunk = self._queue.popleft()
            self._running[chunk.sequence] = chunk
            started.append(chunk)
        return started

    def complete(
        self, sequence: int, result: TranslationResult, now: float | None = None
    ) -> list[TranslationResult]:
        """Store a finished result and release everything now in order.

        Completions of sequences that are no longer running (given up on by
        ``expire`` or cleared by ``cancel_all``) are discarded.

        Args:
            sequence: Sequence of the finished chunk
            result: Its result
            now: Monotonic time (now when omitted)

        Returns:
            Results that became releasable, in ascending sequence order
        """
        if self._running.pop(sequence, None) is None:
            logger.debug(
                "Discarding late completion",
                extra={"session_id": self.session_id, "sequence": sequence},
            )
            return []

        self._buffer[sequence] = result
        self._buffered_at[sequence] = now if now is not None else time.monotonic()
        return self._release()

    def expire(self, now: float | None = None) -> list[TranslationResult]:
        """Give up on missing sequences once the lowest buffered result waited too long.

        Every pending sequence below the lowest buffered one is marked
        dropped; running ones are reported through ``drain_abandoned`` so
        the owner can cancel their work.

        Args:
            now: Monotonic time (now when omitted)

        Returns:
            Results released by skipping the gaps
        """
        if not self._buffer:
            return []

        now = now if now is not None else time.monotonic()
        lowest = min(self._buffer)
        if now - self._buffered_at[lowest] < self.reorder_timeout_s:
            return []

        skipped = []
        for sequence in range(self._release_watermark + 1, lowest):
            if sequence in self._gaps:
                continue
            self._gaps.add(sequence)
            self.dropped_count += 1
            skipped.append(sequence)
            if self._running.pop(sequence, None) is not None:
                self._abandoned.append(sequence)

        logger.warning(
            "Reorder timeout, skipping missing sequences",
            extra={"session_id": self.session_id, "skipped": skipped, "released_from": lowest},
        )
        return self._release()

    def drain_abandoned(self) -> list[int]:
        """Sequences given up on while still running; cleared on read."""
        abandoned, self._abandoned = self._abandoned, []
        return abandoned

    def next_deadline(self) -> float | None:
        """Monotonic time at which ``expire`` should next be called, if any."""
        if not self._buffer:
            return None
        return self._buffered_at[min(self._buffer)] + self.reorder_timeout_s

    def cancel_all(self) -> list[int]:
        """Clear all state on session end.

        Returns:
            Sequences that were running, so the owner can cancel them
        """
        running = sorted(self._running)
        self._queue.clear()
        self._running.clear()
        self._buffer.clear()
        self._buffered_at.clear()
        self._gaps.clear()
        self._abandoned.clear()
        return running

    def _release(self) -> list[TranslationResult]:
        released: list[TranslationResult] = []
        while True:
            candidate = self._release_watermark + 1
            if candidate in self._gaps:
                self._gaps.discard(candidate)
            elif candidate in self._buffer:
                released.append(self._buffer.pop(candidate))
                del self._buffered_at[candidate]
                self.released_count += 1
            else:
                break
            self._release_watermark = candidate
        return released

    def stats(self) -> dict[str, int]:
        return {
            "next_sequence": self._next_sequence,
            "release_watermark": self._release_watermark,
            "in_flight": len(self._running),
            "queued": len(self._queue),
            "buffered": len(self._buffer),
            "dropped": self.dropped_count,
            "released": self.released_count,
        }
