"""Pygame UI shell for the Dual N-Back trainer.

Deterministic timing/scoring/RNG/state lives in dual_nback/* (core modules);
this module only draws the grid, maps keys to engine calls and pumps timers.
"""

from __future__ import annotations

import dataclasses
import random
from collections.abc import Callable
from typing import Protocol

import pygame

from . import __version__
from .clock import RealClock
from .cognitive_core import RunState
from .config import AudioMode, RunConfig, SettingsStore
from .engine import DualNBackEngine, NBackSnapshot, build_dual_nback_engine
from .persistence import BlockHistoryRecorder, default_history_path
from .presentation import SwitchableSink
from .stimulus import GRID_SIZE
from .tally import Channel

WINDOW_SIZE = (540, 720)
TARGET_FPS = 60

SPEED_STEP_MS = 100
BLOCK_LENGTH_STEP = 2

_AUDIO_CYCLE = (AudioMode.OFF, AudioMode.BEEP, AudioMode.SPEECH)

BG = (3, 7, 18)
PANEL_BG = (17, 24, 39)
CELL_BG = (12, 16, 28)
CELL_ACTIVE = (59, 130, 246)
BORDER = (55, 65, 81)
TEXT_MAIN = (238, 242, 250)
TEXT_MUTED = (156, 163, 175)


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> None: ...
    def update(self) -> None: ...
    def render(self, surface: pygame.Surface) -> None: ...


class App:
    def __init__(self, surface: pygame.Surface, font: pygame.font.Font) -> None:
        self._surface = surface
        self._font = font
        self._screens: list[Screen] = []
        self._running = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def font(self) -> pygame.font.Font:
        return self._font

    def push(self, screen: Screen) -> None:
        self._screens.append(screen)

    def pop(self) -> None:
        # Never pop the last/root screen; root handles its own quit/back behavior.
        if len(self._screens) > 1:
            self._screens.pop()

    def quit(self) -> None:
        self._running = False

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.QUIT:
            self.quit()
            return
        if not self._screens:
            return
        self._screens[-1].handle_event(event)

    def update(self) -> None:
        if self._screens:
            self._screens[-1].update()

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


class NBackScreen:
    def __init__(
        self,
        app: App,
        *,
        engine: DualNBackEngine,
        sink: SwitchableSink,
        settings: SettingsStore,
        recorder: BlockHistoryRecorder | None = None,
    ) -> None:
        self._app = app
        self._engine = engine
        self._sink = sink
        self._settings = settings
        self._recorder = recorder
        self._last_recorded_block = 0

        self._big_font = pygame.font.Font(None, 64)
        self._mid_font = pygame.font.Font(None, 36)
        self._small_font = pygame.font.Font(None, 24)
        self._tiny_font = pygame.font.Font(None, 20)

    @property
    def engine(self) -> DualNBackEngine:
        return self._engine

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type != pygame.KEYDOWN:
            return
        key = event.key
        if key == pygame.K_ESCAPE:
            self._engine.stop()
            self._sink.stop()
            self._app.quit()
        elif key == pygame.K_SPACE:
            self._toggle_run()
        elif key == pygame.K_a:
            self._engine.submit_response(Channel.POSITION)
        elif key == pygame.K_l:
            self._engine.submit_response(Channel.SOUND)
        elif key == pygame.K_r:
            self._engine.reset_block()
        elif key == pygame.K_UP:
            self._change_config(n=self._target_config().n + 1)
        elif key == pygame.K_DOWN:
            self._change_config(n=self._target_config().n - 1)
        elif key == pygame.K_RIGHT:
            self._change_config(tick_interval_ms=self._engine.config.tick_interval_ms + SPEED_STEP_MS)
        elif key == pygame.K_LEFT:
            self._change_config(tick_interval_ms=self._engine.config.tick_interval_ms - SPEED_STEP_MS)
        elif key == pygame.K_RIGHTBRACKET:
            self._change_config(trials_per_block=self._target_config().trials_per_block + BLOCK_LENGTH_STEP)
        elif key == pygame.K_LEFTBRACKET:
            self._change_config(trials_per_block=self._target_config().trials_per_block - BLOCK_LENGTH_STEP)
        elif key == pygame.K_m:
            self._cycle_audio_mode()

    def update(self) -> None:
        self._engine.update()
        self._sink.update()
        self._record_finished_blocks()

    def render(self, surface: pygame.Surface) -> None:
        snap = self._engine.snapshot()
        w, h = surface.get_size()
        surface.fill(BG)

        margin = max(12, w // 30)
        title = self._mid_font.render(snap.title, True, TEXT_MAIN)
        surface.blit(title, (margin, margin))
        mode = self._tiny_font.render(f"Audio: {self._sink.settings.audio_mode.value}", True, TEXT_MUTED)
        surface.blit(mode, mode.get_rect(topright=(w - margin, margin + 8)))

        y = margin + title.get_height() + 12
        y = self._render_readouts(surface, snap, margin=margin, top=y, width=w - margin * 2)
        y = self._render_grid(surface, snap, margin=margin, top=y + 12, width=w - margin * 2)
        y = self._render_tallies(surface, snap, margin=margin, top=y + 12, width=w - margin * 2)

        prompt = self._small_font.render(snap.prompt, True, TEXT_MAIN)
        surface.blit(prompt, (margin, y + 10))
        hints = (
            snap.input_hint,
            "Up/Down=N  Left/Right=speed  [ ]=block length  M=audio  Esc=quit",
            f"Speed {self._engine.config.tick_interval_ms} ms  |  Rule: >=75% N+1, <55% N-1",
        )
        hy = h - margin - len(hints) * 20
        for line in hints:
            surface.blit(self._tiny_font.render(line, True, TEXT_MUTED), (margin, hy))
            hy += 20

    def _render_readouts(
        self,
        surface: pygame.Surface,
        snap: NBackSnapshot,
        *,
        margin: int,
        top: int,
        width: int,
    ) -> int:
        gap = 8
        box_w = (width - gap * 2) // 3
        box_h = 64
        shown_trial = min(snap.trial_index, snap.trials_per_block)
        boxes = (
            ("N", str(snap.n)),
            ("Trial", f"{shown_trial} / {snap.trials_per_block}"),
            ("Accuracy", f"{snap.combined_accuracy * 100.0:.0f}%"),
        )
        for idx, (label, value) in enumerate(boxes):
            rect = pygame.Rect(margin + idx * (box_w + gap), top, box_w, box_h)
            pygame.draw.rect(surface, PANEL_BG, rect, border_radius=10)
            surface.blit(self._tiny_font.render(label, True, TEXT_MUTED), (rect.x + 10, rect.y + 8))
            surface.blit(self._mid_font.render(value, True, TEXT_MAIN), (rect.x + 10, rect.y + 28))
        return top + box_h

    def _render_grid(
        self,
        surface: pygame.Surface,
        snap: NBackSnapshot,
        *,
        margin: int,
        top: int,
        width: int,
    ) -> int:
        gap = 8
        cell = min(130, (width - gap * (GRID_SIZE - 1)) // GRID_SIZE)
        left = margin + (width - (GRID_SIZE * cell + (GRID_SIZE - 1) * gap)) // 2
        current = snap.current
        for pos in range(GRID_SIZE * GRID_SIZE):
            row, col = divmod(pos, GRID_SIZE)
            rect = pygame.Rect(left + col * (cell + gap), top + row * (cell + gap), cell, cell)
            active = current is not None and current.position == pos
            pygame.draw.rect(surface, CELL_ACTIVE if active else CELL_BG, rect, border_radius=14)
            pygame.draw.rect(surface, BORDER, rect, 1, border_radius=14)
            if active:
                assert current is not None
                letter = self._big_font.render(current.letter, True, TEXT_MAIN)
                surface.blit(letter, letter.get_rect(center=rect.center))
        return top + GRID_SIZE * cell + (GRID_SIZE - 1) * gap

    def _render_tallies(
        self,
        surface: pygame.Surface,
        snap: NBackSnapshot,
        *,
        margin: int,
        top: int,
        width: int,
    ) -> int:
        gap = 8
        box_w = (width - gap) // 2
        line_h = 20
        box_h = 12 + line_h * 5
        t = snap.tally
        panels = (
            ("Position (A)", t.pos_hits, t.pos_misses, t.pos_false_alarms, snap.position_accuracy, snap.position_open),
            ("Sound (L)", t.snd_hits, t.snd_misses, t.snd_false_alarms, snap.sound_accuracy, snap.sound_open),
        )
        for idx, (label, hits, misses, false_alarms, acc, is_open) in enumerate(panels):
            rect = pygame.Rect(margin + idx * (box_w + gap), top, box_w, box_h)
            pygame.draw.rect(surface, PANEL_BG, rect, border_radius=10)
            head_color = TEXT_MAIN if is_open and snap.state is RunState.RUNNING else TEXT_MUTED
            lines = (
                (label, head_color),
                (f"Hits: {hits}", TEXT_MAIN),
                (f"Misses: {misses}", TEXT_MAIN),
                (f"False alarms: {false_alarms}", TEXT_MAIN),
                (f"Acc: {acc * 100.0:.0f}%", TEXT_MAIN),
            )
            ly = rect.y + 6
            for text, color in lines:
                surface.blit(self._small_font.render(text, True, color), (rect.x + 10, ly))
                ly += line_h
        return top + box_h

    def _toggle_run(self) -> None:
        if self._engine.state is RunState.IDLE:
            self._engine.start()
        else:
            self._engine.stop()
            self._sink.stop()

    def _target_config(self) -> RunConfig:
        return self._engine.pending_config or self._engine.config

    def _change_config(self, **changes: int) -> None:
        target = self._engine.set_config(**changes)
        self._settings.update(run_config=target)

    def _cycle_audio_mode(self) -> None:
        current = self._sink.settings
        idx = _AUDIO_CYCLE.index(current.audio_mode) if current.audio_mode in _AUDIO_CYCLE else 0
        updated = dataclasses.replace(current, audio_mode=_AUDIO_CYCLE[(idx + 1) % len(_AUDIO_CYCLE)])
        self._sink.switch(updated)
        self._settings.update(presentation=updated)

    def _record_finished_blocks(self) -> None:
        # Block numbers keep counting across runs, so they identify what is already saved.
        for result in self._engine.block_results():
            if result.block_number <= self._last_recorded_block:
                continue
            if self._recorder is not None:
                self._recorder.record(result)
            self._last_recorded_block = result.block_number


def _new_seed() -> int:
    return random.SystemRandom().randint(1, 2**31 - 1)


def run(*, max_frames: int | None = None, event_injector: Callable[[int], None] | None = None) -> int:
    pygame.init()

    pygame.display.set_caption("Dual N-Back")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 36)
    clock = pygame.time.Clock()

    app = App(surface=surface, font=font)

    settings = SettingsStore(SettingsStore.default_path())
    sink = SwitchableSink(settings.presentation)
    seed = _new_seed()
    engine = build_dual_nback_engine(
        clock=RealClock(),
        seed=seed,
        config=settings.run_config,
        presenter=sink,
    )
    recorder = BlockHistoryRecorder(db_path=default_history_path(), app_version=__version__, seed=seed)

    app.push(NBackScreen(app, engine=engine, sink=sink, settings=settings, recorder=recorder))

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                app.handle_event(event)

            app.update()
            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            clock.tick(TARGET_FPS)
    finally:
        engine.stop()
        sink.stop()
        pygame.quit()

    return 0
