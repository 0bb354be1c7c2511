"""Frame energy measurement used to gate the listen silence deadline."""

from __future__ import annotations

import struct

from callme.audio.codecs import _MULAW_DECODE_TABLE
from callme.core.events import Codec


def compute_audio_energy(data: bytes, codec: Codec = Codec.MULAW) -> float:
    """Compute RMS energy of an audio frame.

    Args:
        data: Raw audio bytes.
        codec: ``Codec.MULAW`` or ``Codec.PCM16``.

    Returns:
        RMS energy as a float (0.0 = silence, ~32768.0 = max).
    """
    if not data:
        return 0.0

    if codec == Codec.MULAW:
        # Fast path: use lookup table directly
        total = 0
        for b in data:
            s = _MULAW_DECODE_TABLE[b]
            total += s * s
        return (total / len(data)) ** 0.5

    n_samples = len(data) // 2
    if n_samples == 0:
        return 0.0
    samples = struct.unpack_from(f"<{n_samples}h", data)
    total = sum(s * s for s in samples)
    return (total / n_samples) ** 0.5


def is_speech(data: bytes, threshold: float, codec: Codec = Codec.MULAW) -> bool:
    """Whether a frame is loud enough to count as the caller talking.

    A threshold of 0 treats every frame as speech.
    """
    if threshold <= 0:
        return True
    return compute_audio_energy(data, codec) >= threshold
