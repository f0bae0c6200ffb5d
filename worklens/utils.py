from __future__ import annotations

import ctypes
import os
from pathlib import Path
from typing import Tuple

import psutil

UNKNOWN = "Unknown"


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_active_window() -> Tuple[str, str]:
    """Return ``(window_title, process_name)`` of the focused window.

    Only Windows exposes the foreground window here; elsewhere both values are
    ``"Unknown"`` and application exclusion never matches.
    """
    if os.name != "nt":
        return UNKNOWN, UNKNOWN

    user32 = ctypes.windll.user32
    hwnd = user32.GetForegroundWindow()
    if not hwnd:
        return UNKNOWN, UNKNOWN
    return _window_title(user32, hwnd) or UNKNOWN, _process_name(_window_pid(user32, hwnd))


def _window_title(user32, hwnd) -> str:
    length = user32.GetWindowTextLengthW(hwnd)
    buffer = ctypes.create_unicode_buffer(length + 1)
    user32.GetWindowTextW(hwnd, buffer, length + 1)
    return buffer.value


def _window_pid(user32, hwnd) -> int:
    from ctypes import wintypes

    pid = wintypes.DWORD()
    user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
    return int(pid.value)


def _process_name(pid: int) -> str:
    if not pid:
        return UNKNOWN
    try:
        return psutil.Process(pid).name()
    except psutil.Error:
        # Exited or access denied; the pid still tells windows apart.
        return f"PID-{pid}"


def process_memory_bytes() -> int:
    return int(psutil.Process().memory_info().rss)
