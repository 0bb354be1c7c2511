"""Audio sample rate conversion for CallMe.

Speech vendors return PCM16 at 24 kHz (sometimes 16 or 22.05 kHz) while the
carrier wire runs at 8 kHz. Conversion uses linear interpolation, which is
plenty for narrowband telephone audio. All audio is PCM16 little-endian mono.
"""

from __future__ import annotations

import struct


def resampled_length(n_samples: int, from_rate: int, to_rate: int) -> int:
    """Number of output samples produced for ``n_samples`` input samples."""
    if from_rate == to_rate:
        return n_samples
    return int(n_samples * to_rate / from_rate)


def resample(data: bytes, from_rate: int, to_rate: int) -> bytes:
    """Resample PCM16 little-endian audio from one sample rate to another.

    Args:
        data: PCM16 little-endian audio bytes.
        from_rate: Source sample rate in Hz.
        to_rate: Target sample rate in Hz.

    Returns:
        Resampled PCM16 little-endian audio bytes.
    """
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"Sample rates must be positive: {from_rate} -> {to_rate}")

    if from_rate == to_rate:
        return data

    n_samples = len(data) // 2
    if n_samples == 0:
        return b""

    samples = struct.unpack_from(f"<{n_samples}h", data)

    ratio = from_rate / to_rate
    out_len = resampled_length(n_samples, from_rate, to_rate)

    out_samples = []
    for i in range(out_len):
        src_pos = i * ratio
        src_idx = int(src_pos)
        frac = src_pos - src_idx

        if src_idx + 1 < n_samples:
            sample = samples[src_idx] * (1.0 - frac) + samples[src_idx + 1] * frac
        else:
            sample = samples[min(src_idx, n_samples - 1)]

        # Clamp to int16 range
        sample = max(-32768, min(32767, int(sample)))
        out_samples.append(sample)

    return struct.pack(f"<{len(out_samples)}h", *out_samples)
