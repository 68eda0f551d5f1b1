"""Audio capture and playback capabilities for relay clients.

A broadcaster needs something that yields self-contained audio chunks; a
subscriber needs somewhere to put synthesized speech. Both are expressed as
protocols so device-backed implementations can replace the directory-backed
ones used for testing and scripted demos.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".webm", ".ogg", ".wav", ".mp4", ".m4a", ".mp3")


class AudioCaptureSource(Protocol):
    """Produces complete, independently decodable audio chunks."""

    def chunks(self) -> AsyncIterator[bytes]: ...


class AudioSink(Protocol):
    """Consumes synthesized audio payloads."""

    async def write(self, audio: bytes, audio_format: str, sequence: int) -> None: ...


class DirectoryCaptureSource:
    """Replays audio files from a directory as broadcaster chunks.

    Files are sent in name order, one file per chunk.

    Args:
        directory: Directory containing audio files
        chunk_interval_s: Pause between chunks (0 to send as fast as possible)
        loop: Restart from the first file after the last one
    """

    def __init__(self, directory: Path, chunk_interval_s: float = 3.0, loop: bool = False) -> None:
        self.directory = Path(directory)
        self.chunk_interval_s = chunk_interval_s
        self.loop = loop

    def files(self) -> list[Path]:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Audio directory not found: {self.directory}")
        return sorted(
            p
            for p in self.directory.iterdir()
            if p.is_file() and p.suffix.lower() in AUDIO_EXTENSIONS
        )

    async def chunks(self) -> AsyncIterator[bytes]:
        files = self.files()
        if not files:
            logger.warning("No audio files found", extra={"directory": str(self.directory)})
            return

        first = True
        while True:
            for path in files:
                if not first and self.chunk_interval_s > 0:
                    await asyncio.sleep(self.chunk_interval_s)
                first = False
                logger.debug("Sending audio chunk", extra={"file": path.name})
                yield path.read_bytes()
            if not self.loop:
                return


class DirectorySink:
    """Writes each received audio payload to a numbered file.

    Args:
        directory: Output directory (created if missing)
        prefix: File name prefix
    """

    def __init__(self, directory: Path, prefix: str = "translation") -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self.written: list[Path] = []

    async def write(self, audio: bytes, audio_format: str, sequence: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{self.prefix}_{sequence:05d}.{audio_format}"
        path.write_bytes(audio)
        self.written.append(path)
        logger.debug("Saved audio", extra={"path": str(path), "bytes": len(audio)})
