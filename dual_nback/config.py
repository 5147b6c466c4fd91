from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from .cognitive_core import clamp_int

logger = logging.getLogger(__name__)

SETTINGS_PATH_ENV = "DUAL_NBACK_SETTINGS_PATH"

MIN_N = 1
MIN_TICK_INTERVAL_MS = 300
MIN_TRIALS_PER_BLOCK = 8
MIN_RESPONSE_WINDOW_MS = 1

DEFAULT_N = 2
DEFAULT_TICK_INTERVAL_MS = 2500
DEFAULT_TRIALS_PER_BLOCK = 20
# Absolute margin between window expiry and the next stimulus, independent of speed.
DEFAULT_WINDOW_MARGIN_MS = 80
DEFAULT_BLOCK_PAUSE_MS = 400


@dataclass(frozen=True, slots=True)
class RunConfig:
    n: int = DEFAULT_N
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    trials_per_block: int = DEFAULT_TRIALS_PER_BLOCK
    response_window_ms: int = DEFAULT_TICK_INTERVAL_MS - DEFAULT_WINDOW_MARGIN_MS
    window_margin_ms: int = DEFAULT_WINDOW_MARGIN_MS
    block_pause_ms: int = DEFAULT_BLOCK_PAUSE_MS

    @property
    def tick_interval_s(self) -> float:
        return self.tick_interval_ms / 1000.0

    @property
    def response_window_s(self) -> float:
        return self.response_window_ms / 1000.0

    @property
    def block_pause_s(self) -> float:
        return self.block_pause_ms / 1000.0

    def with_changes(self, **changes: Any) -> RunConfig:
        """Return a clamped copy with ``changes`` applied.

        Changing the tick interval or margin without naming a window
        re-derives the window as ``tick_interval_ms - window_margin_ms``.
        """

        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise TypeError(f"Unknown RunConfig fields: {sorted(unknown)}")
        timing_changed = "tick_interval_ms" in changes or "window_margin_ms" in changes
        if timing_changed and "response_window_ms" not in changes:
            changes["response_window_ms"] = None
        return make_run_config(base=self, **changes)


def make_run_config(*, base: RunConfig | None = None, **values: Any) -> RunConfig:
    """Build a RunConfig, clamping every field to its nearest valid value."""

    b = base or RunConfig()
    n = clamp_int(values.get("n", b.n), MIN_N, fallback=b.n)
    tick = clamp_int(
        values.get("tick_interval_ms", b.tick_interval_ms),
        MIN_TICK_INTERVAL_MS,
        fallback=b.tick_interval_ms,
    )
    trials = clamp_int(
        values.get("trials_per_block", b.trials_per_block),
        MIN_TRIALS_PER_BLOCK,
        fallback=b.trials_per_block,
    )
    margin = clamp_int(values.get("window_margin_ms", b.window_margin_ms), 0, fallback=b.window_margin_ms)
    pause = clamp_int(values.get("block_pause_ms", b.block_pause_ms), 0, fallback=b.block_pause_ms)

    derived_window = max(MIN_RESPONSE_WINDOW_MS, tick - margin)
    raw_window = values.get("response_window_ms", b.response_window_ms if base is not None else None)
    if raw_window is None:
        window = derived_window
    else:
        window = clamp_int(raw_window, MIN_RESPONSE_WINDOW_MS, tick, fallback=derived_window)

    return RunConfig(
        n=n,
        tick_interval_ms=tick,
        trials_per_block=trials,
        response_window_ms=min(window, tick),
        window_margin_ms=margin,
        block_pause_ms=pause,
    )


class AudioMode(StrEnum):
    OFF = "off"
    BEEP = "beep"
    SPEECH = "speech"


@dataclass(frozen=True, slots=True)
class PresentationSettings:
    audio_mode: AudioMode = AudioMode.BEEP
    voice: str | None = None  # None lets the speech backend pick its default
    language: str = "en-US"

    def to_dict(self) -> dict[str, Any]:
        return {
            "audio_mode": self.audio_mode.value,
            "voice": self.voice,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: object) -> PresentationSettings:
        if not isinstance(data, dict):
            return cls()
        try:
            mode = AudioMode(str(data.get("audio_mode", AudioMode.BEEP.value)).strip().lower())
        except ValueError:
            mode = AudioMode.BEEP
        raw_voice = data.get("voice")
        voice = None if raw_voice is None else (str(raw_voice).strip() or None)
        language = str(data.get("language") or "en-US").strip() or "en-US"
        return cls(audio_mode=mode, voice=voice, language=language)


def run_config_to_dict(config: RunConfig) -> dict[str, int]:
    return {f.name: int(getattr(config, f.name)) for f in dataclasses.fields(config)}


def run_config_from_dict(data: object) -> RunConfig:
    if not isinstance(data, dict):
        return RunConfig()
    known = {f.name for f in dataclasses.fields(RunConfig)}
    values = {k: v for k, v in data.items() if k in known}
    return make_run_config(**values)


class SettingsStore:
    """JSON-backed trainer settings: run configuration plus audio presentation."""

    _version = 1

    def __init__(self, path: Path) -> None:
        self._path = path
        self._run_config = RunConfig()
        self._presentation = PresentationSettings()
        self._load()

    @classmethod
    def default_path(cls) -> Path:
        explicit = os.environ.get(SETTINGS_PATH_ENV)
        if explicit:
            return Path(explicit).expanduser()
        return Path.home() / ".dual_nback_settings.json"

    @property
    def path(self) -> Path:
        return self._path

    @property
    def run_config(self) -> RunConfig:
        return self._run_config

    @property
    def presentation(self) -> PresentationSettings:
        return self._presentation

    def update(
        self,
        *,
        run_config: RunConfig | None = None,
        presentation: PresentationSettings | None = None,
    ) -> None:
        if run_config is not None:
            self._run_config = run_config
        if presentation is not None:
            self._presentation = presentation
        self.save()

    def save(self) -> bool:
        payload = {
            "version": self._version,
            "run_config": run_config_to_dict(self._run_config),
            "presentation": self._presentation.to_dict(),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            logger.warning("Could not save settings to %s: %s", self._path, exc)
            return False
        return True

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return
        self._run_config = run_config_from_dict(payload.get("run_config"))
        self._presentation = PresentationSettings.from_dict(payload.get("presentation"))
