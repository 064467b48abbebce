"""PCM16 audio helpers for the realtime wire format."""

from __future__ import annotations

import base64
import binascii

import numpy as np

from llmux.errors import InvalidInputError


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clip float samples to [-1, 1] and convert to little-endian int16 bytes."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0) * 32767
    return clipped.astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    if len(data) % 2:
        raise InvalidInputError("PCM16 data must have an even number of bytes")
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def encode_pcm16(data: bytes) -> str:
    """Base64-encode raw PCM16 bytes for ``input_audio_buffer.append``."""
    return base64.b64encode(data).decode("ascii")


def decode_pcm16(audio_b64: str) -> bytes:
    try:
        return base64.b64decode(audio_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("Audio payload is not valid base64") from e


def rms_level(data: bytes) -> float:
    """Root-mean-square level of PCM16 audio, normalized to [0, 1].

    A trailing odd byte is ignored.
    """
    usable = len(data) - (len(data) % 2)
    if usable == 0:
        return 0.0
    samples = pcm16_to_float(data[:usable])
    return float(min(1.0, np.sqrt(np.mean(np.square(samples, dtype=np.float64)))))


def duration_s(data: bytes, sample_rate: int) -> float:
    return (len(data) // 2) / sample_rate


class AudioBuffer:
    """Byte buffer bounded at *max_bytes*; overflow drops the oldest bytes."""

    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 1:
            raise InvalidInputError("max_bytes must be >= 1")
        self.max_bytes = max_bytes
        self._data = bytearray()
        self.dropped_bytes = 0

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self.max_bytes
        if overflow > 0:
            # Keep sample alignment when trimming.
            overflow += overflow % 2
            del self._data[:overflow]
            self.dropped_bytes += overflow

    def drain(self) -> bytes:
        data = bytes(self._data)
        self._data.clear()
        return data

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)
