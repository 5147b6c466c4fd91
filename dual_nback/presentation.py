"""Stimulus presentation sinks.

The engine calls ``present(stimulus)`` once per trial and never looks at the
result. Audio lives entirely here: a pygame tone per letter (``ToneSink``) or
the letter spoken by an offline text-to-speech backend (``SpeechSink``).
Both degrade to silence when their backend is unavailable.
"""

from __future__ import annotations

import importlib.util
import logging
import math
import os
import shutil
import subprocess
import sys
import time
from array import array
from typing import Protocol

import pygame

from .config import AudioMode, PresentationSettings
from .stimulus import Stimulus, letter_index

logger = logging.getLogger(__name__)

DISABLE_TTS_ENV = "DUAL_NBACK_DISABLE_TTS"
TTS_BACKEND_ENV = "DUAL_NBACK_TTS_BACKEND"


class PresentationPort(Protocol):
    def present(self, stimulus: Stimulus) -> None: ...


class PresentationSink(PresentationPort, Protocol):
    """Presentation port with the host-loop hooks the app drives."""

    def update(self) -> None: ...
    def stop(self) -> None: ...


class NullSink:
    def present(self, stimulus: Stimulus) -> None:
        return None

    def update(self) -> None:
        return None

    def stop(self) -> None:
        return None


class RecordingSink(NullSink):
    """Keeps every presented stimulus; handy for headless runs."""

    def __init__(self) -> None:
        self.presented: list[Stimulus] = []

    def present(self, stimulus: Stimulus) -> None:
        self.presented.append(stimulus)


def tone_frequency_hz(letter: str) -> float:
    idx = letter_index(letter)
    return 500.0 + (30.0 * idx if idx >= 0 else 0.0)


class ToneSink:
    """One short sine beep per letter, pitch keyed to the letter's pool index."""

    _sample_rate = 22050
    _amp = 32767
    _duration_s = 0.14
    _gain = 0.5

    def __init__(self) -> None:
        self._available = False
        self._cache: dict[str, pygame.mixer.Sound] = {}
        self._channel: pygame.mixer.Channel | None = None
        self._mixer_rate = self._sample_rate
        self._mixer_channels = 1

        try:
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(frequency=self._sample_rate, size=-16, channels=1, buffer=512)
            # The host may have initialised the mixer with its own format.
            rate, _, channels = pygame.mixer.get_init()
            self._mixer_rate = int(rate)
            self._mixer_channels = max(1, int(channels))
            self._channel = pygame.mixer.Channel(0)
            self._available = True
        except pygame.error as exc:
            logger.warning("Tone output unavailable: %s", exc)
            self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def present(self, stimulus: Stimulus) -> None:
        if not self._available:
            return
        assert self._channel is not None
        sound = self._cache.get(stimulus.letter)
        if sound is None:
            sound = self._build_tone_sound(tone_frequency_hz(stimulus.letter))
            self._cache[stimulus.letter] = sound
        self._channel.set_volume(0.8)
        self._channel.play(sound)

    def update(self) -> None:
        return None

    def stop(self) -> None:
        if self._available and self._channel is not None:
            self._channel.stop()

    def _build_tone_sound(self, frequency_hz: float) -> pygame.mixer.Sound:
        pcm = render_tone_pcm(
            frequency_hz,
            self._duration_s,
            gain=self._gain,
            sample_rate=self._mixer_rate,
            amp=self._amp,
        )
        if self._mixer_channels > 1:
            pcm = interleave_channels(pcm, self._mixer_channels)
        return pygame.mixer.Sound(buffer=pcm.tobytes())


def render_tone_pcm(
    frequency_hz: float,
    duration_s: float,
    *,
    gain: float,
    sample_rate: int = 22050,
    amp: int = 32767,
) -> array[int]:
    """Signed 16-bit mono sine with short linear fades at both ends."""

    sample_count = max(1, int(sample_rate * duration_s))
    fade_n = max(1, int(sample_rate * 0.010))
    out = array("h")
    for idx in range(sample_count):
        envelope = 1.0
        if idx < fade_n:
            envelope = idx / float(fade_n)
        tail = sample_count - idx - 1
        if tail < fade_n:
            envelope = min(envelope, tail / float(fade_n))
        phase = (2.0 * math.pi * float(frequency_hz) * idx) / float(sample_rate)
        sample = math.sin(phase) * gain * max(0.0, envelope)
        out.append(int(max(-1.0, min(1.0, sample)) * amp))
    return out


def interleave_channels(pcm: array[int], channels: int) -> array[int]:
    out = array("h")
    for sample in pcm:
        out.extend([sample] * channels)
    return out


def _speech_muted() -> bool:
    if os.environ.get(DISABLE_TTS_ENV, "0") == "1":
        return True
    # Headless runs (tests, CI) stay silent.
    return os.environ.get("SDL_AUDIODRIVER", "").strip().lower() == "dummy"


def _which_any(*names: str) -> str | None:
    for name in names:
        found = shutil.which(name)
        if found is not None:
            return found
    return None


def _backend_ready(name: str) -> bool:
    if name == "say":
        return _which_any("say") is not None
    if name == "powershell":
        return _which_any("powershell", "pwsh") is not None
    if name == "espeak":
        return _which_any("espeak-ng", "espeak") is not None
    if name == "pyttsx3":
        return importlib.util.find_spec("pyttsx3") is not None
    return False


def _speech_backends() -> list[str]:
    """Usable backends, preferred first. ``DUAL_NBACK_TTS_BACKEND`` pins one if it is usable."""

    forced = os.environ.get(TTS_BACKEND_ENV, "").strip().lower()
    if forced and _backend_ready(forced):
        return [forced]

    order: list[str] = []
    if sys.platform == "darwin":
        order.append("say")
    if os.name == "nt":
        order.append("powershell")
    order.extend(("espeak", "pyttsx3"))
    return [name for name in order if _backend_ready(name)]


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    try:
        proc.terminate()
        proc.wait(timeout=0.5)
    except subprocess.TimeoutExpired:
        proc.kill()
    except OSError as exc:
        logger.debug("Speech process already gone: %s", exc)


_PYTTSX3_SCRIPT = """\
import sys
import pyttsx3

rate, voice, text = int(sys.argv[1]), sys.argv[2], sys.argv[3]
engine = pyttsx3.init()
engine.setProperty("rate", rate)
for v in engine.getProperty("voices") if voice else ():
    if voice in (v.id, v.name):
        engine.setProperty("voice", v.id)
        break
engine.say(text)
engine.runAndWait()
"""

_POWERSHELL_SCRIPT = (
    "Add-Type -AssemblyName System.Speech; "
    "$s = New-Object System.Speech.Synthesis.SpeechSynthesizer; "
    "if ($args[0]) { $s.SelectVoice($args[0]) }; "
    "$s.Speak($args[1])"
)


class OfflineTtsSpeaker:
    """Speaks stimulus letters through an offline TTS subprocess.

    One letter is spoken at a time and at most one waits behind it. A newer
    letter replaces the waiting one, so speech never trails the grid by more
    than a trial. Utterances are cut off after ``_max_utterance_s``.
    """

    _max_utterance_s = 3.0
    _rate_wpm = 160

    def __init__(self, *, voice: str | None = None, language: str = "en-US") -> None:
        self._voice = voice
        self._language = language
        self._backends: list[str] = []
        self._waiting: str | None = None
        self._proc: subprocess.Popen[bytes] | None = None
        self._cutoff_s = 0.0

        if _speech_muted():
            return
        self._backends = _speech_backends()
        if not self._backends:
            logger.warning("No offline speech backend found; speech output disabled")

    @property
    def enabled(self) -> bool:
        return bool(self._backends)

    @property
    def backend(self) -> str | None:
        return self._backends[0] if self._backends else None

    @property
    def pending_count(self) -> int:
        return int(self._proc is not None) + int(self._waiting is not None)

    def speak(self, text: str) -> None:
        if not self.enabled:
            return
        phrase = " ".join(str(text).split())
        if phrase:
            self._waiting = phrase

    def update(self) -> None:
        if self._proc is not None and not self._done(self._proc):
            return
        self._proc = None
        if self._waiting is None:
            return

        text, self._waiting = self._waiting, None
        while self._backends:
            proc = self._spawn(self._backends[0], text)
            if proc is not None:
                self._proc = proc
                self._cutoff_s = time.monotonic() + self._max_utterance_s
                return
            failed = self._backends.pop(0)
            logger.warning("Speech backend %s failed to start", failed)
        logger.warning("No working speech backend left; speech output disabled")

    def stop(self) -> None:
        self._waiting = None
        proc, self._proc = self._proc, None
        if proc is not None:
            _terminate(proc)

    def _done(self, proc: subprocess.Popen[bytes]) -> bool:
        if proc.poll() is not None:
            return True
        if time.monotonic() < self._cutoff_s:
            return False
        _terminate(proc)
        return True

    def _command(self, backend: str, text: str) -> list[str]:
        rate = str(self._rate_wpm)
        voice = self._voice or ""
        if backend == "say":
            return [_which_any("say") or "say", "-r", rate, *(["-v", voice] if voice else []), text]
        if backend == "powershell":
            shell = _which_any("powershell", "pwsh") or "powershell"
            return [shell, "-NoProfile", "-NonInteractive", "-Command", _POWERSHELL_SCRIPT, voice, text]
        if backend == "espeak":
            binary = _which_any("espeak-ng", "espeak") or "espeak"
            return [binary, "-s", rate, "-v", voice or self._language.lower(), text]
        return [sys.executable, "-c", _PYTTSX3_SCRIPT, rate, voice, text]

    def _spawn(self, backend: str, text: str) -> subprocess.Popen[bytes] | None:
        try:
            return subprocess.Popen(
                self._command(backend, text),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("Could not launch %s: %s", backend, exc)
            return None


class SpeechSink:
    """Speaks each stimulus letter."""

    def __init__(self, *, voice: str | None = None, language: str = "en-US") -> None:
        self._tts = OfflineTtsSpeaker(voice=voice, language=language)

    @property
    def enabled(self) -> bool:
        return self._tts.enabled

    def present(self, stimulus: Stimulus) -> None:
        self._tts.speak(stimulus.letter)
        self._tts.update()

    def update(self) -> None:
        self._tts.update()

    def stop(self) -> None:
        self._tts.stop()


def build_presentation_sink(settings: PresentationSettings) -> PresentationSink:
    if settings.audio_mode is AudioMode.SPEECH:
        return SpeechSink(voice=settings.voice, language=settings.language)
    if settings.audio_mode is AudioMode.BEEP:
        return ToneSink()
    return NullSink()


class SwitchableSink:
    """Single presentation port whose audio backend can be swapped between trials."""

    def __init__(self, settings: PresentationSettings) -> None:
        self._settings = settings
        self._sink: PresentationSink = build_presentation_sink(settings)

    @property
    def settings(self) -> PresentationSettings:
        return self._settings

    @property
    def sink(self) -> PresentationSink:
        return self._sink

    def switch(self, settings: PresentationSettings) -> None:
        if settings == self._settings:
            return
        self._sink.stop()
        self._settings = settings
        self._sink = build_presentation_sink(settings)
        logger.info("Audio mode set to %s", settings.audio_mode.value)

    def present(self, stimulus: Stimulus) -> None:
        self._sink.present(stimulus)

    def update(self) -> None:
        self._sink.update()

    def stop(self) -> None:
        self._sink.stop()
