"""Audio codec engine for CallMe.

Pure-Python G.711 mu-law encoding/decoding via lookup tables, fixed-size
wire framing for carrier media streams, and the WAV container handed to
speech recognizers. All conversion routes through PCM16 little-endian mono
as the intermediate (hub-and-spoke) format.
"""

from __future__ import annotations

import struct
from math import gcd

from callme.audio.resampler import resample

# ---------------------------------------------------------------------------
# Wire format constants
# ---------------------------------------------------------------------------

WIRE_SAMPLE_RATE = 8000
WIRE_FRAME_MS = 20
# One mu-law byte per sample: 20 ms @ 8 kHz mono
WIRE_FRAME_BYTES = WIRE_SAMPLE_RATE * WIRE_FRAME_MS // 1000

# Encoded value of a zero sample, used to pad the last frame
MULAW_SILENCE = 0xFF

WAV_HEADER_BYTES = 44

# ---------------------------------------------------------------------------
# G.711 mu-law
# ---------------------------------------------------------------------------

_MULAW_BIAS = 0x84
_MULAW_CLIP = 32635


def mulaw_encode_sample(sample: int) -> int:
    """Encode a single 16-bit PCM sample to mu-law (ITU-T G.711)."""
    sign = 0x80 if sample < 0 else 0
    if sign:
        sample = -sample

    if sample > _MULAW_CLIP:
        sample = _MULAW_CLIP

    sample += _MULAW_BIAS

    # Position of the highest set bit, scanning from bit 14 down to bit 7
    exponent = 7
    exp_mask = 0x4000
    while exponent > 0 and not (sample & exp_mask):
        exponent -= 1
        exp_mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def mulaw_decode_sample(value: int) -> int:
    """Expand a mu-law byte back to a 16-bit PCM sample."""
    value = ~value & 0xFF
    sign = value & 0x80
    exponent = (value >> 4) & 0x07
    mantissa = value & 0x0F
    sample = (((mantissa << 3) + _MULAW_BIAS) << exponent) - _MULAW_BIAS
    return -sample if sign else sample


_MULAW_DECODE_TABLE: list[int] = [mulaw_decode_sample(_i) for _i in range(256)]

# 16-bit unsigned index -> mu-law byte
_MULAW_ENCODE_TABLE: bytes = bytes(
    mulaw_encode_sample(_i if _i < 32768 else _i - 65536) for _i in range(65536)
)


def mulaw_decode(data: bytes) -> bytes:
    """Decode mu-law bytes to PCM16 little-endian bytes."""
    if not data:
        return b""
    samples = [_MULAW_DECODE_TABLE[b] for b in data]
    return struct.pack(f"<{len(samples)}h", *samples)


def mulaw_encode(data: bytes) -> bytes:
    """Encode PCM16 little-endian bytes to mu-law bytes.

    A trailing odd byte is ignored.
    """
    n_samples = len(data) // 2
    if n_samples == 0:
        return b""
    samples = struct.unpack_from(f"<{n_samples}h", data)
    return bytes(_MULAW_ENCODE_TABLE[s & 0xFFFF] for s in samples)


# ---------------------------------------------------------------------------
# Framing and containers
# ---------------------------------------------------------------------------


def chunk_frames(
    data: bytes,
    frame_size: int = WIRE_FRAME_BYTES,
    pad: bool = True,
) -> list[bytes]:
    """Split encoded audio into fixed-size wire frames.

    With ``pad`` the final short frame is filled with mu-law silence so
    every frame has exactly ``frame_size`` bytes.
    """
    frames = [data[i:i + frame_size] for i in range(0, len(data), frame_size)]
    if pad and frames and len(frames[-1]) < frame_size:
        frames[-1] = frames[-1] + bytes([MULAW_SILENCE]) * (frame_size - len(frames[-1]))
    return frames


def build_wav(
    pcm: bytes,
    sample_rate: int = WIRE_SAMPLE_RATE,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    """Wrap raw PCM in a 44-byte RIFF/WAVE header."""
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,  # PCM
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        len(pcm),
    )
    return header + pcm


def mulaw_to_wav(mulaw: bytes) -> bytes:
    """Decode carrier audio and package it for a speech recognizer."""
    return build_wav(mulaw_decode(mulaw))


class OutboundEncoder:
    """Streaming PCM16 -> mu-law wire frame encoder.

    Synthesized speech arrives in arbitrary chunk sizes (odd byte counts
    included) at the vendor's sample rate. The encoder keeps whatever does
    not yet make up a whole resampling block or a whole frame and carries
    it into the next ``feed`` call.

    Usage:
        encoder = OutboundEncoder(source_rate=24000)
        for chunk in tts_chunks:
            for frame in encoder.feed(chunk):
                send(frame)
        for frame in encoder.flush():
            send(frame)
    """

    def __init__(
        self,
        source_rate: int,
        target_rate: int = WIRE_SAMPLE_RATE,
        frame_size: int = WIRE_FRAME_BYTES,
    ) -> None:
        self.source_rate = source_rate
        self.target_rate = target_rate
        self.frame_size = frame_size
        # Smallest input block that resamples to a whole number of samples
        self._block_samples = source_rate // gcd(source_rate, target_rate)
        self._pcm = bytearray()
        self._encoded = bytearray()

    def feed(self, pcm: bytes) -> list[bytes]:
        """Add PCM16 audio and return every complete wire frame."""
        self._pcm.extend(pcm)
        block_bytes = self._block_samples * 2
        usable = len(self._pcm) - len(self._pcm) % block_bytes
        if usable:
            self._encode(bytes(self._pcm[:usable]))
            del self._pcm[:usable]
        return self._take_frames()

    def flush(self) -> list[bytes]:
        """Encode the remainder and return the final (padded) frames."""
        if len(self._pcm) >= 2:
            self._encode(bytes(self._pcm[: len(self._pcm) - len(self._pcm) % 2]))
        self._pcm.clear()
        frames = self._take_frames()
        if self._encoded:
            frames.extend(chunk_frames(bytes(self._encoded), self.frame_size))
            self._encoded.clear()
        return frames

    def _encode(self, pcm: bytes) -> None:
        self._encoded.extend(mulaw_encode(resample(pcm, self.source_rate, self.target_rate)))

    def _take_frames(self) -> list[bytes]:
        whole = len(self._encoded) - len(self._encoded) % self.frame_size
        if not whole:
            return []
        frames = chunk_frames(bytes(self._encoded[:whole]), self.frame_size, pad=False)
        del self._encoded[:whole]
        return frames
