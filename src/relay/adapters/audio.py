"""Audio rendering helpers for synthetic speech and test signals."""

import io

import numpy as np
import soundfile as sf
from numpy.typing import NDArray

DEFAULT_SAMPLE_RATE_HZ: int = 16000


def generate_sine_wave(
    frequency: float, duration_ms: int, sample_rate: int = DEFAULT_SAMPLE_RATE_HZ
) -> NDArray[np.float32]:
    """Generate a sine wave at the specified frequency.

    Args:
        frequency: Frequency in Hz (must be positive and <= sample_rate/2)
        duration_ms: Duration in milliseconds (must be non-negative)
        sample_rate: Sample rate in Hz

    Returns:
        Float32 samples in [-0.5, 0.5]

    Raises:
        ValueError: If parameters are invalid
    """
    if sample_rate <= 0:
        raise ValueError(f"Sample rate must be positive, got {sample_rate}")
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    if frequency > sample_rate / 2:
        raise ValueError(f"Frequency {frequency} exceeds Nyquist limit {sample_rate / 2}")
    if duration_ms < 0:
        raise ValueError(f"Duration must be non-negative, got {duration_ms}")

    num_samples = int(sample_rate * duration_ms / 1000.0)
    t = np.arange(num_samples, dtype=np.float32)
    return (0.5 * np.sin(2.0 * np.pi * frequency * t / sample_rate)).astype(np.float32)


def render_wav(samples: NDArray[np.float32], sample_rate: int = DEFAULT_SAMPLE_RATE_HZ) -> bytes:
    """Render float32 samples into a self-contained 16-bit PCM WAV container.

    Args:
        samples: Mono float32 samples in [-1.0, 1.0]
        sample_rate: Sample rate in Hz

    Returns:
        WAV file bytes

    Raises:
        ValueError: If there are no samples
    """
    if samples.size == 0:
        raise ValueError("Audio array cannot be empty")

    buffer = io.BytesIO()
    sf.write(buffer, np.clip(samples, -1.0, 1.0), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def tone_wav(
    frequency: float, duration_ms: int, sample_rate: int = DEFAULT_SAMPLE_RATE_HZ
) -> bytes:
    """Render a sine tone directly into a WAV container."""
    return render_wav(generate_sine_wave(frequency, duration_ms, sample_rate), sample_rate)
