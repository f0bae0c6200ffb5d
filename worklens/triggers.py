from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Optional, Set

from .logging_utils import get_logger
from .models import TriggerKind

logger = get_logger("triggers")

TriggerCallback = Callable[[TriggerKind, dict], Awaitable[Any]]

_CTRL = {"ctrl", "ctrl_l", "ctrl_r"}
_CMD = {"cmd", "cmd_l", "cmd_r"}
_ALT = {"alt", "alt_l", "alt_r", "alt_gr"}
# With Ctrl held some platforms report control characters instead of letters.
_COPY_CHARS = {"c", "\x03"}
_PASTE_CHARS = {"v", "\x16"}


def key_token(key: Any) -> str:
    """Normalise a pynput key to a lowercase token (``"enter"``, ``"ctrl_l"``, ``"c"``)."""
    name = getattr(key, "name", None)
    if name:
        return str(name).lower()
    char = getattr(key, "char", None)
    if char:
        return str(char).lower()
    return ""


def classify_key(token: str, pressed_modifiers: Set[str]) -> Optional[TriggerKind]:
    ctrl = bool(pressed_modifiers & _CTRL)
    cmd = bool(pressed_modifiers & _CMD)
    alt = bool(pressed_modifiers & _ALT)

    if token == "enter":
        return TriggerKind.ENTER_KEY
    if token == "tab":
        if alt or cmd:
            return TriggerKind.WINDOW_SWITCH
        if ctrl:
            return TriggerKind.TAB_SWITCH
        return None
    if ctrl or cmd:
        if token in _COPY_CHARS:
            return TriggerKind.COPY
        if token in _PASTE_CHARS:
            return TriggerKind.PASTE
    return None


class InputTriggerMonitor:
    """Turns global mouse/keyboard events into capture triggers.

    pynput delivers events on its own threads; each trigger is handed to the
    event loop with ``asyncio.run_coroutine_threadsafe``.
    """

    def __init__(self, on_trigger: TriggerCallback):
        self._on_trigger = on_trigger
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._modifiers: Set[str] = set()
        self._lock = threading.Lock()
        self._mouse_listener = None
        self._keyboard_listener = None

    @property
    def running(self) -> bool:
        return self._mouse_listener is not None or self._keyboard_listener is not None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.running:
            return

        # Imported here: pynput needs a display server at import time.
        from pynput import keyboard, mouse

        self._loop = loop
        self._mouse_listener = mouse.Listener(on_click=self._on_click)
        self._keyboard_listener = keyboard.Listener(on_press=self._on_press, on_release=self._on_release)
        self._mouse_listener.start()
        self._keyboard_listener.start()
        logger.debug("Input trigger listeners started")

    def stop(self) -> None:
        if self._mouse_listener:
            self._mouse_listener.stop()
            self._mouse_listener = None
        if self._keyboard_listener:
            self._keyboard_listener.stop()
            self._keyboard_listener = None
        with self._lock:
            self._modifiers.clear()
        self._loop = None

    def _on_click(self, x, y, button, pressed):
        if not pressed or getattr(button, "name", "") != "left":
            return
        self._dispatch(TriggerKind.POINTER_CLICK, {"x": int(x), "y": int(y), "button": "left"})

    def _on_press(self, key):
        token = key_token(key)
        with self._lock:
            if token in _CTRL | _CMD | _ALT:
                self._modifiers.add(token)
                return
            modifiers = set(self._modifiers)
        kind = classify_key(token, modifiers)
        if kind is not None:
            self._dispatch(kind, {"key": token, "modifiers": sorted(modifiers)})

    def _on_release(self, key):
        token = key_token(key)
        with self._lock:
            self._modifiers.discard(token)

    def _dispatch(self, kind: TriggerKind, detail: dict) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._on_trigger(kind, detail), loop)
