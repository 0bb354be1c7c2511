"""Tests for the CallMe audio pipeline: G.711, framing, WAV, resampling, energy."""

import struct

import pytest

from callme.audio.codecs import (
    MULAW_SILENCE,
    WAV_HEADER_BYTES,
    WIRE_FRAME_BYTES,
    OutboundEncoder,
    build_wav,
    chunk_frames,
    mulaw_decode,
    mulaw_decode_sample,
    mulaw_encode,
    mulaw_encode_sample,
    mulaw_to_wav,
)
from callme.audio.energy import compute_audio_energy, is_speech
from callme.audio.resampler import resample, resampled_length
from callme.core.events import Codec


def pcm(*samples: int) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


class TestMulaw:
    """Tests for G.711 mu-law codec."""

    def test_roundtrip_error_within_quantization_step(self):
        """Every 16-bit sample decodes to within one step of its clipped value."""
        samples = range(-32768, 32768)
        decoded = struct.unpack(f"<{len(samples)}h", mulaw_decode(mulaw_encode(pcm(*samples))))

        for sample, recovered in zip(samples, decoded):
            encoded = mulaw_encode_sample(sample)
            exponent = (~encoded >> 4) & 0x07
            expected = max(-32635, min(32635, sample))
            assert recovered == mulaw_decode_sample(encoded)
            assert abs(recovered - expected) <= 1 << (exponent + 3), \
                f"Sample {sample} -> encoded -> {recovered} (exponent {exponent})"

    def test_zero_encodes_to_silence_byte(self):
        assert mulaw_encode(pcm(0)) == bytes([MULAW_SILENCE])
        assert mulaw_decode(bytes([MULAW_SILENCE])) == pcm(0)

    def test_clipping(self):
        """Full-scale samples clip instead of wrapping."""
        loud = struct.unpack("<h", mulaw_decode(mulaw_encode(pcm(32767))))[0]
        quiet = struct.unpack("<h", mulaw_decode(mulaw_encode(pcm(-32768))))[0]
        assert loud > 30000
        assert quiet < -30000

    def test_encode_length(self):
        """Mu-law encodes 2 PCM bytes to 1 mu-law byte."""
        assert len(mulaw_encode(b"\x00" * 100)) == 50

    def test_trailing_odd_byte_ignored(self):
        assert len(mulaw_encode(b"\x00" * 7)) == 3

    def test_decode_length(self):
        assert len(mulaw_decode(b"\xff" * 50)) == 100

    def test_empty(self):
        assert mulaw_encode(b"") == b""
        assert mulaw_decode(b"") == b""


class TestFraming:

    def test_exact_frames(self):
        frames = chunk_frames(b"\x01" * (WIRE_FRAME_BYTES * 3))
        assert len(frames) == 3
        assert all(len(f) == WIRE_FRAME_BYTES for f in frames)

    def test_last_frame_padded_with_silence(self):
        frames = chunk_frames(b"\x01" * 170)
        assert len(frames) == 2
        assert frames[1] == b"\x01" * 10 + bytes([MULAW_SILENCE]) * 150

    def test_no_padding(self):
        frames = chunk_frames(b"\x01" * 170, pad=False)
        assert len(frames[1]) == 10

    def test_empty(self):
        assert chunk_frames(b"") == []


class TestWav:

    def test_header_layout(self):
        body = pcm(1, 2, 3, 4)
        wav = build_wav(body)
        assert len(wav) == WAV_HEADER_BYTES + len(body)
        assert wav[:4] == b"RIFF"
        assert wav[8:16] == b"WAVEfmt "
        riff_size, = struct.unpack_from("<I", wav, 4)
        assert riff_size == 36 + len(body)
        fmt, channels, rate, byte_rate, align, bits = struct.unpack_from("<HHIIHH", wav, 20)
        assert (fmt, channels, rate, byte_rate, align, bits) == (1, 1, 8000, 16000, 2, 16)
        assert wav[36:40] == b"data"
        data_size, = struct.unpack_from("<I", wav, 40)
        assert data_size == len(body)
        assert wav[44:] == body

    def test_mulaw_to_wav_doubles_payload(self):
        wav = mulaw_to_wav(b"\xff" * 160)
        assert len(wav) == WAV_HEADER_BYTES + 320

    def test_empty_audio_is_header_only(self):
        assert len(mulaw_to_wav(b"")) == WAV_HEADER_BYTES


class TestResampler:

    def test_same_rate_passthrough(self):
        data = pcm(1, 2, 3)
        assert resample(data, 8000, 8000) is data

    def test_downsample_length(self):
        out = resample(pcm(*range(30)), 24000, 8000)
        assert len(out) == 20  # 10 samples

    def test_upsample_length(self):
        out = resample(pcm(*range(10)), 8000, 16000)
        assert len(out) == 40

    def test_downsample_picks_every_third_sample(self):
        out = resample(pcm(0, 100, 200, 300, 400, 500), 24000, 8000)
        assert struct.unpack("<2h", out) == (0, 300)

    def test_resampled_length(self):
        assert resampled_length(2400, 24000, 8000) == 800
        assert resampled_length(100, 8000, 8000) == 100

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            resample(pcm(1), 0, 8000)

    def test_empty(self):
        assert resample(b"", 24000, 8000) == b""


class TestOutboundEncoder:

    def test_odd_chunks_produce_whole_frames(self):
        # 100 ms at 24 kHz -> 800 mu-law bytes -> 5 wire frames
        audio = pcm(*([1000] * 2400))
        encoder = OutboundEncoder(source_rate=24000)

        frames = []
        for i in range(0, len(audio), 7):
            frames.extend(encoder.feed(audio[i:i + 7]))
        frames.extend(encoder.flush())

        assert len(frames) == 5
        assert all(len(f) == WIRE_FRAME_BYTES for f in frames)

    def test_flush_pads_final_frame(self):
        encoder = OutboundEncoder(source_rate=8000)
        assert encoder.feed(pcm(*([0] * 100))) == []
        frames = encoder.flush()
        assert len(frames) == 1
        assert len(frames[0]) == WIRE_FRAME_BYTES
        assert frames[0][100:] == bytes([MULAW_SILENCE]) * 60

    def test_flush_when_empty(self):
        assert OutboundEncoder(source_rate=24000).flush() == []

    def test_frames_emitted_as_soon_as_complete(self):
        encoder = OutboundEncoder(source_rate=8000)
        frames = encoder.feed(pcm(*([0] * 200)))
        assert len(frames) == 1
        assert len(encoder.flush()) == 1


class TestEnergy:

    def test_silence_has_no_energy(self):
        assert compute_audio_energy(b"\xff" * 160) == 0.0

    def test_loud_frame(self):
        assert compute_audio_energy(b"\x10" * 160) > 10000

    def test_pcm_energy(self):
        assert compute_audio_energy(pcm(300, -300), Codec.PCM16) == pytest.approx(300.0)

    def test_empty(self):
        assert compute_audio_energy(b"") == 0.0

    def test_zero_threshold_counts_everything(self):
        assert is_speech(b"\xff" * 160, 0)

    def test_threshold_gates_silence(self):
        assert not is_speech(b"\xff" * 160, 300)
        assert is_speech(b"\x10" * 160, 300)
