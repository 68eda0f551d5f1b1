"""Audio chunk decoding and validation.

Each broadcaster chunk is a complete, independently decodable audio
container (a browser MediaRecorder restarted per chunk yields one WebM file
per chunk), not a fragment of a continuous stream. The codec decodes the
transport encoding, recognises the container from its leading bytes and then
opens it with an audio library to prove it is readable: libsndfile (through
soundfile) for WAV and Ogg, ffmpeg (through pydub) for WebM, MP4 and MP3.
Decoding may block, so callers run it off the event loop.

Recognised containers:
    - webm: EBML header 0x1A45DFA3 (WebM / Matroska)
    - ogg: "OggS" capture pattern
    - wav: "RIFF" .... "WAVE" with a consistent RIFF size
    - mp4: "ftyp" box at offset 4
    - mp3: "ID3" tag or an MPEG audio frame sync
"""

import base64
import binascii
import hashlib
import io
import logging
import struct

import soundfile as sf
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from src.relay.errors import AudioDecodeError

logger = logging.getLogger(__name__)

EBML_MAGIC: bytes = b"\x1a\x45\xdf\xa3"
OGG_MAGIC: bytes = b"OggS"
RIFF_MAGIC: bytes = b"RIFF"
WAVE_MAGIC: bytes = b"WAVE"
MP4_FTYP: bytes = b"ftyp"
ID3_MAGIC: bytes = b"ID3"

# Containers libsndfile reads directly; webm, mp4 and mp3 go through ffmpeg
SOUNDFILE_CONTAINERS: frozenset[str] = frozenset({"wav", "ogg"})

# Smallest plausible container: a WAV header alone is 44 bytes
MIN_CHUNK_BYTES: int = 12


def sniff_container(data: bytes) -> str | None:
    """Identify the container format from its leading bytes.

    Args:
        data: Raw chunk bytes

    Returns:
        Container name, or None if not recognised
    """
    if data.startswith(EBML_MAGIC):
        return "webm"
    if data.startswith(OGG_MAGIC):
        return "ogg"
    if data.startswith(RIFF_MAGIC) and data[8:12] == WAVE_MAGIC:
        return "wav"
    if data[4:8] == MP4_FTYP:
        return "mp4"
    if data.startswith(ID3_MAGIC):
        return "mp3"
    if len(data) >= 2 and data[0] == 0xFF and (data[1] & 0xE0) == 0xE0:
        return "mp3"
    return None


def _validate_wav(data: bytes) -> None:
    """Check that the RIFF size field is consistent with the payload."""
    if len(data) < 44:
        raise AudioDecodeError(f"Truncated WAV header: {len(data)} bytes")
    (riff_size,) = struct.unpack_from("<I", data, 4)
    if riff_size + 8 > len(data):
        raise AudioDecodeError(
            f"Truncated WAV chunk: header declares {riff_size + 8} bytes, got {len(data)}"
        )


def _read_with_soundfile(data: bytes, container: str) -> None:
    """Open the chunk with libsndfile and require at least one audio frame."""
    try:
        info = sf.info(io.BytesIO(data))
    except RuntimeError as e:
        # LibsndfileError subclasses RuntimeError
        raise AudioDecodeError(f"Undecodable {container} chunk: {e}") from e
    if info.frames <= 0:
        raise AudioDecodeError(f"Empty {container} chunk: no audio frames")


def _read_with_ffmpeg(data: bytes, container: str) -> None:
    """Decode the chunk with ffmpeg and require a non-empty result."""
    try:
        segment = AudioSegment.from_file(io.BytesIO(data), format=container)
    except CouldntDecodeError as e:
        raise AudioDecodeError(f"Undecodable {container} chunk") from e
    except OSError as e:
        logger.error(
            "ffmpeg unavailable, cannot validate chunk",
            extra={"container": container, "error": str(e)},
        )
        raise AudioDecodeError(f"Cannot decode {container} chunk: ffmpeg unavailable") from e
    if len(segment) == 0:
        raise AudioDecodeError(f"Empty {container} chunk: no audio")


def decode_payload(payload: bytes | str) -> bytes:
    """Decode a wire payload to raw chunk bytes.

    Args:
        payload: Raw bytes, or base64 text (optionally a ``data:`` URL)

    Returns:
        Raw container bytes

    Raises:
        AudioDecodeError: If base64 decoding fails
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)

    text = payload.strip()
    if text.startswith("data:"):
        _, _, text = text.partition(",")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"Failed to decode base64 audio chunk: {e}") from e


def encode_audio(data: bytes) -> str:
    """Encode audio bytes to base64 text for JSON transport."""
    return base64.b64encode(data).decode("ascii")


def audio_ref(data: bytes) -> str:
    """Content-addressed reference for a synthesized audio payload."""
    return hashlib.sha1(data, usedforsecurity=False).hexdigest()[:16]


class AudioChunkCodec:
    """Decodes and validates inbound broadcaster chunks.

    Args:
        max_chunk_bytes: Upper bound on the decoded chunk size
        allowed_containers: Containers accepted by the pipeline
    """

    def __init__(
        self,
        max_chunk_bytes: int = 2 * 2**20,
        allowed_containers: list[str] | None = None,
    ) -> None:
        self.max_chunk_bytes = max_chunk_bytes
        self.allowed_containers = set(allowed_containers or ["webm", "ogg", "wav", "mp4", "mp3"])

    def decode(self, payload: bytes | str) -> tuple[bytes, str]:
        """Decode and validate one chunk.

        Args:
            payload: Wire payload (bytes or base64 text)

        Returns:
            Tuple of (container bytes, container name)

        Raises:
            AudioDecodeError: If the chunk is empty, oversized, undecodable,
                of an unknown or disallowed container, or truncated
        """
        data = decode_payload(payload)

        if len(data) < MIN_CHUNK_BYTES:
            raise AudioDecodeError(f"Audio chunk too small: {len(data)} bytes")
        if len(data) > self.max_chunk_bytes:
            raise AudioDecodeError(
                f"Audio chunk too large: {len(data)} bytes (max {self.max_chunk_bytes})"
            )

        container = sniff_container(data)
        if container is None:
            raise AudioDecodeError("Unrecognised audio container")
        if container not in self.allowed_containers:
            raise AudioDecodeError(f"Audio container not allowed: {container}")

        if container == "wav":
            _validate_wav(data)

        if container in SOUNDFILE_CONTAINERS:
            _read_with_soundfile(data, container)
        else:
            _read_with_ffmpeg(data, container)

        return data, container
