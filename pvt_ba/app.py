"""Pygame shell for the adaptive Psychomotor Vigilance Test (PVT-BA).

Deterministic timing/classification/RNG/state lives in pvt_ba/* (core
modules); this module only turns input events into engine calls and draws the
engine snapshot.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Protocol

import pygame

from .clock import RealClock
from .cognitive_core import Phase, TestSnapshot
from .pvt import PvtConfig, PvtEngine, PvtPayload, TrialKind, TrialState, build_pvt_test
from .results import PvtResult, pvt_result_from_engine

logger = logging.getLogger(__name__)

WINDOW_SIZE = (960, 540)
TARGET_FPS = 60

SCENE_BG = (255, 255, 255)
TEXT_PRIMARY = (0, 0, 0)
TEXT_SECONDARY = (100, 100, 100)
TEXT_TERTIARY = (140, 140, 140)
STIMULUS_BOX_BG = (230, 230, 240)
STIMULUS_BOX_BORDER = (180, 180, 200)
GREEN = (76, 175, 80)
YELLOW = (200, 160, 0)
RED = (244, 67, 54)

CLASSIFICATION_COLORS = {"HIGH": GREEN, "MEDIUM": YELLOW, "LOW": RED}


class Screen(Protocol):
    def handle_event(self, event: pygame.event.Event) -> None: ...
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
        # The last screen closing ends the program.
        if self._screens:
            self._screens.pop()
        if not self._screens:
            self.quit()

    def quit(self) -> None:
        self._running = False

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.QUIT:
            self.quit()
            return
        if not self._screens:
            return
        self._screens[-1].handle_event(event)

    def render(self) -> None:
        if not self._screens:
            return
        self._screens[-1].render(self._surface)


class PvtTestScreen:
    def __init__(
        self,
        app: App,
        *,
        engine_factory: Callable[[], PvtEngine],
        on_result: Callable[[PvtResult], None] | None = None,
    ) -> None:
        self._app = app
        self._engine = engine_factory()
        self._on_result = on_result
        self._result_sent = False

        self._small_font = pygame.font.Font(None, 26)
        self._counter_font = pygame.font.Font(None, 96)
        self._early_font = pygame.font.Font(None, 56)

    @property
    def engine(self) -> PvtEngine:
        return self._engine

    def handle_event(self, event: pygame.event.Event) -> None:
        if event.type == pygame.KEYDOWN:
            self._handle_key(event)
            return
        if event.type == pygame.MOUSEBUTTONDOWN and getattr(event, "touch", False):
            # SDL mirrors each touch as a mouse click; the FINGERDOWN already counted.
            return
        if event.type in (pygame.MOUSEBUTTONDOWN, pygame.JOYBUTTONDOWN, pygame.FINGERDOWN):
            self._tap()

    def _handle_key(self, event: pygame.event.Event) -> None:
        key = event.key
        # Emergency exit: allowed from any state, including mid-session.
        if key == pygame.K_F12 or (key == pygame.K_ESCAPE and (getattr(event, "mod", 0) & pygame.KMOD_SHIFT)):
            self._engine.cancel()
            self._app.pop()
            return

        phase = self._engine.phase
        if key in (pygame.K_ESCAPE, pygame.K_BACKSPACE):
            if self._engine.can_exit():
                self._engine.cancel()
                self._app.pop()
            return
        if key in (pygame.K_RETURN, pygame.K_KP_ENTER):
            if phase is Phase.INSTRUCTIONS:
                self._engine.start()
            elif phase in (Phase.RESULTS, Phase.CANCELLED):
                self._app.pop()
            return
        if key == pygame.K_SPACE:
            self._tap()

    def _tap(self) -> None:
        if self._engine.phase is Phase.INSTRUCTIONS:
            self._engine.start()
            return
        self._engine.respond()

    def render(self, surface: pygame.Surface) -> None:
        self._engine.update()
        snap = self._engine.snapshot()
        self._maybe_publish_result(snap)

        surface.fill(SCENE_BG)
        title = self._app.font.render(snap.title, True, TEXT_PRIMARY)
        surface.blit(title, (40, 30))

        payload = snap.payload if isinstance(snap.payload, PvtPayload) else None
        if payload is None:
            self._render_prompt(surface, snap)
            return

        self._render_stimulus_box(surface, payload)
        status = self._small_font.render(
            f"Trial {payload.trials_completed} | LpFS: {payload.lpfs_count}", True, TEXT_TERTIARY
        )
        surface.blit(status, (40, surface.get_height() - 40))

    def _render_prompt(self, surface: pygame.Surface, snap: TestSnapshot) -> None:
        y = 100
        for line in str(snap.prompt).split("\n")[:12]:
            color = TEXT_SECONDARY
            if line.startswith("Vigilance: "):
                color = CLASSIFICATION_COLORS.get(line.removeprefix("Vigilance: "), TEXT_PRIMARY)
            txt = self._small_font.render(line, True, color)
            surface.blit(txt, (40, y))
            y += 30

    def _render_stimulus_box(self, surface: pygame.Surface, payload: PvtPayload) -> None:
        w, h = surface.get_size()
        box = pygame.Rect(0, 0, 320, 130)
        box.center = (w // 2, h // 2)

        border = STIMULUS_BOX_BORDER
        text: str | None = None
        color = GREEN
        font = self._counter_font

        if payload.trial_state is TrialState.STIMULUS_VISIBLE and payload.counter_ms is not None:
            text = str(payload.counter_ms)
        elif payload.trial_state is TrialState.FEEDBACK and payload.feedback_kind is not None:
            kind = payload.feedback_kind
            if kind is TrialKind.FALSE_START:
                text, color, font = "TOO EARLY", RED, self._early_font
            elif kind is TrialKind.TIMEOUT:
                text, color = "---", RED
            elif kind is TrialKind.LAPSE:
                text, color = str(payload.feedback_rt_ms), RED
            else:
                text = str(payload.feedback_rt_ms)
                color = GREEN if payload.feedback_fast else YELLOW
            border = color

        pygame.draw.rect(surface, STIMULUS_BOX_BG, box, border_radius=14)
        pygame.draw.rect(surface, border, box, width=2, border_radius=14)
        if text is not None:
            img = font.render(text, True, color)
            surface.blit(img, img.get_rect(center=box.center))

        if payload.trial_state is TrialState.FEEDBACK and payload.feedback_kind is TrialKind.FALSE_START:
            hint = self._small_font.render("Wait for the counter", True, RED)
            surface.blit(hint, hint.get_rect(center=(box.centerx, box.bottom + 40)))
        elif payload.trial_state is TrialState.FEEDBACK and payload.feedback_rt_ms is not None:
            hint = self._small_font.render("ms", True, color)
            surface.blit(hint, hint.get_rect(center=(box.centerx, box.bottom + 40)))

    def _maybe_publish_result(self, snap: TestSnapshot) -> None:
        if self._result_sent or snap.phase is not Phase.RESULTS:
            return
        self._result_sent = True
        result = pvt_result_from_engine(self._engine)
        logger.info(
            "PVT result: %s (%s) trials=%d lpfs=%d median_rt=%s",
            result.classification.value,
            result.stop_reason.value,
            result.trial_count,
            result.lpfs_count,
            "n/a" if result.median_rt_ms is None else f"{result.median_rt_ms:.0f} ms",
        )
        if self._on_result is not None:
            self._on_result(result)


def _init_joysticks() -> None:
    pygame.joystick.init()
    for i in range(pygame.joystick.get_count()):
        pygame.joystick.Joystick(i).init()


def _new_seed() -> int:
    return random.SystemRandom().randint(1, 2**31 - 1)


def run(
    *,
    max_frames: int | None = None,
    event_injector: Callable[[int], None] | None = None,
    config: PvtConfig | None = None,
    on_result: Callable[[PvtResult], None] | None = None,
) -> int:
    """Run the PVT window until it is closed or ``max_frames`` is reached.

    Taps are timed when the frame loop handles them, not when the device
    produced them (pygame events carry no timestamp). Reaction times can
    therefore read up to one frame late, about 17 ms at ``TARGET_FPS``.
    """
    pygame.init()
    _init_joysticks()

    pygame.display.set_caption("PVT-BA")
    surface = pygame.display.set_mode(WINDOW_SIZE, pygame.RESIZABLE)

    font = pygame.font.Font(None, 42)
    clock = pygame.time.Clock()

    app = App(surface=surface, font=font)

    real_clock = RealClock()
    seed = _new_seed()
    app.push(
        PvtTestScreen(
            app,
            engine_factory=lambda: build_pvt_test(clock=real_clock, seed=seed, config=config),
            on_result=on_result,
        )
    )

    frame = 0
    try:
        while app.running:
            if event_injector is not None:
                event_injector(frame)

            for event in pygame.event.get():
                app.handle_event(event)

            app.render()

            pygame.display.flip()

            frame += 1
            if max_frames is not None and frame >= max_frames:
                break

            clock.tick(TARGET_FPS)
    finally:
        pygame.quit()

    return 0
