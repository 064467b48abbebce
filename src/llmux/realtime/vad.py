"""Energy-threshold voice-activity detection."""

from __future__ import annotations

from dataclasses import dataclass

from llmux.errors import InvalidInputError
from llmux.realtime.audio import duration_s, rms_level
from llmux.realtime.config import WIRE_SAMPLE_RATE


@dataclass(frozen=True)
class VADResult:
    has_voice: bool
    should_forward: bool
    level: float
    speech_started: bool = False
    speech_ended: bool = False


class EnergyVAD:
    """RMS-threshold detector with a trailing silence window.

    Chunks are forwarded while voice is present and for up to
    ``silence_duration_s`` of audio afterwards. The window is measured in
    audio time (sample count), not wall time. ``speech_ended`` fires once
    when the window is exhausted.
    """

    def __init__(
        self,
        threshold: float = 0.01,
        silence_duration_s: float = 0.5,
        sample_rate: int = WIRE_SAMPLE_RATE,
    ) -> None:
        if not (0.0 <= threshold <= 1.0):
            raise InvalidInputError("threshold must be within [0, 1]")
        if silence_duration_s < 0:
            raise InvalidInputError("silence_duration_s must be >= 0")
        if sample_rate <= 0:
            raise InvalidInputError("sample_rate must be > 0")
        self.threshold = threshold
        self.silence_duration_s = silence_duration_s
        self.sample_rate = sample_rate
        self._in_speech = False
        self._silence_s = 0.0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def reset(self) -> None:
        self._in_speech = False
        self._silence_s = 0.0

    def process(self, chunk: bytes) -> VADResult:
        level = rms_level(chunk)
        if level >= self.threshold and level > 0.0:
            started = not self._in_speech
            self._in_speech = True
            self._silence_s = 0.0
            return VADResult(True, True, level, speech_started=started)

        if not self._in_speech:
            return VADResult(False, False, level)

        self._silence_s += duration_s(chunk, self.sample_rate)
        if self._silence_s <= self.silence_duration_s:
            return VADResult(False, True, level)
        self.reset()
        return VADResult(False, False, level, speech_ended=True)
