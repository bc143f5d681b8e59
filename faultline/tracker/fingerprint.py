"""Stable error fingerprints from type, message and leading stack frames."""

from __future__ import annotations

import hashlib
import re

# Python: '  File "app/x.py", line 12, in handler'
_PY_FRAME_RE = re.compile(r'^\s*File "(?P<file>[^"]+)", line \d+(?:, in (?P<func>\S+))?')
# JS-style: '    at handler (app/x.js:12:5)'
_AT_FRAME_RE = re.compile(r"^\s*at\s+(?P<loc>.+?)(?:\s+\(|$)")

_LINE_COL_RE = re.compile(r":\d+:\d+")
_LINE_NO_RE = re.compile(r"line \d+")

FRAME_LIMIT = 3


def extract_frames(stack_trace: str, limit: int = FRAME_LIMIT) -> list[str]:
    """Return the first *limit* frame lines of *stack_trace*.

    Recognises Python ``File "...", line N`` frames and ``at ...`` frames.
    When no frame line is recognised the first *limit* lines are used.
    """
    lines = [line for line in stack_trace.splitlines() if line.strip()]
    frames = [
        line for line in lines
        if _PY_FRAME_RE.match(line) or _AT_FRAME_RE.match(line)
    ]
    return (frames or lines)[:limit]


def normalize_frame(line: str) -> str:
    """Zero out line/column numbers so moved call sites still collide."""
    line = _LINE_COL_RE.sub(":0:0", line)
    return _LINE_NO_RE.sub("line 0", line).strip()


def frame_location(line: str) -> str | None:
    """Short human location for a frame line (``func (file.py)`` or the ``at`` target)."""
    m = _PY_FRAME_RE.match(line)
    if m:
        filename = m.group("file").rsplit("/", 1)[-1]
        func = m.group("func")
        return f"{func} ({filename})" if func else filename
    m = _AT_FRAME_RE.match(line)
    if m:
        return m.group("loc")
    return None


class Fingerprinter:
    """Computes 16-hex-char md5 fingerprints with a ``type:message`` cache.

    The cache is cleared wholesale once it grows past *cache_size*.
    """

    def __init__(self, cache_size: int = 10_000) -> None:
        self._cache_size = cache_size
        self._cache: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def fingerprint(self, error_type: str, message: str, stack_trace: str | None = None) -> str:
        key = f"{error_type}:{message}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        payload = key
        if stack_trace:
            frames = [normalize_frame(f) for f in extract_frames(stack_trace)]
            payload += ":" + "\n".join(frames)

        fp = hashlib.md5(payload.encode("utf-8")).hexdigest()[:16]

        if len(self._cache) >= self._cache_size:
            self._cache.clear()
        self._cache[key] = fp
        return fp

    def clear(self) -> None:
        self._cache.clear()
