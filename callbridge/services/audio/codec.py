"""PCM resampling and G.711 mu-law encoding for telephony media streams."""
import struct
from typing import Iterator, List

# Source audio from the TTS provider is 24 kHz, 16-bit little-endian mono PCM.
# The phone leg carries 8 kHz mu-law, one byte per sample.
SOURCE_SAMPLE_RATE = 24000
TARGET_SAMPLE_RATE = 8000
DOWNSAMPLE_FACTOR = SOURCE_SAMPLE_RATE // TARGET_SAMPLE_RATE

FRAME_SIZE = 160  # 20 ms at 8 kHz
FRAME_DURATION_SECONDS = 0.02
PCM_UNIT_BYTES = DOWNSAMPLE_FACTOR * 2  # one 8 kHz output sample

MULAW_BIAS = 0x84
MULAW_CLIP = 32635


def _unpack_samples(pcm: bytes) -> List[int]:
    count = len(pcm) // 2
    return list(struct.unpack(f"<{count}h", pcm[: count * 2]))


def _round_third(total: int) -> int:
    # total / 3 rounded half up; thirds never land on .5
    return (2 * total + 3) // 6


def downsample_24k_to_8k(pcm: bytes) -> bytes:
    """
    Downsample 24 kHz PCM16 to 8 kHz by averaging each group of three samples.

    Args:
        pcm: Little-endian signed 16-bit samples. A trailing odd byte is ignored.

    Returns:
        PCM16 bytes holding floor(n / 3) samples
    """
    samples = _unpack_samples(pcm)
    count = len(samples)
    output_count = count // DOWNSAMPLE_FACTOR
    output = []
    for i in range(output_count):
        base = i * DOWNSAMPLE_FACTOR
        s0 = samples[base]
        s1 = samples[base + 1] if base + 1 < count else s0
        s2 = samples[base + 2] if base + 2 < count else s1
        output.append(_round_third(s0 + s1 + s2))
    return struct.pack(f"<{output_count}h", *output)


def linear_to_mulaw(sample: int) -> int:
    """Encode one signed 16-bit sample as a G.711 mu-law byte."""
    sign = (sample >> 8) & 0x80
    if sign:
        sample = -sample
    if sample > MULAW_CLIP:
        sample = MULAW_CLIP
    sample += MULAW_BIAS

    exponent = 7
    mask = 0x4000
    while not (sample & mask) and exponent > 0:
        exponent -= 1
        mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def mulaw_to_linear(value: int) -> int:
    """Decode one G.711 mu-law byte to a signed 16-bit sample."""
    value = ~value & 0xFF
    sign = value & 0x80
    exponent = (value >> 4) & 0x07
    mantissa = value & 0x0F
    sample = (((mantissa << 3) + MULAW_BIAS) << exponent) - MULAW_BIAS
    return -sample if sign else sample


_ENCODE_TABLE = bytes(linear_to_mulaw(s) for s in range(-32768, 32768))


def pcm16_to_mulaw(pcm: bytes) -> bytes:
    """Encode PCM16 bytes to mu-law, one byte per sample."""
    return bytes(_ENCODE_TABLE[s + 32768] for s in _unpack_samples(pcm))


def mulaw_to_pcm16(data: bytes) -> bytes:
    """Decode mu-law bytes to PCM16."""
    return struct.pack(f"<{len(data)}h", *(mulaw_to_linear(b) for b in data))


def encode_for_phone(pcm_24k: bytes) -> bytes:
    """Convert a complete 24 kHz PCM16 buffer to 8 kHz mu-law."""
    return pcm16_to_mulaw(downsample_24k_to_8k(pcm_24k))


def iter_frames(data: bytes, frame_size: int = FRAME_SIZE) -> Iterator[bytes]:
    """Split encoded audio into fixed-size frames; the last one may be short."""
    for offset in range(0, len(data), frame_size):
        yield data[offset : offset + frame_size]


class StreamingEncoder:
    """Incremental 24 kHz PCM16 to 8 kHz mu-law encoder.

    Input arrives in arbitrary chunk sizes; only whole 6-byte units (three
    source samples) are converted, the remainder waits for the next chunk.
    """

    def __init__(self):
        self._pending = b""

    def feed(self, chunk: bytes) -> bytes:
        """Add PCM bytes and return the mu-law bytes now available."""
        self._pending += chunk
        usable = (len(self._pending) // PCM_UNIT_BYTES) * PCM_UNIT_BYTES
        if not usable:
            return b""
        ready, self._pending = self._pending[:usable], self._pending[usable:]
        return encode_for_phone(ready)

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)
