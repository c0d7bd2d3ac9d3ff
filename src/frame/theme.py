"""Color & style helpers for terminal output.

Decisions:
- Each task state has its own color; tags can be colored from ``[ui.tag_colors]``.
- Truecolor preferred; falls back to the 256-color cube if unsupported.
- Disabled when not a TTY unless FORCE_COLOR=1; NO_COLOR disables completely.
- State colors can be overridden with FRAME_COLOR_<STATE> environment variables.
"""
from __future__ import annotations
import os, sys
from typing import Dict, Mapping, Optional

from .models import TaskState

_FORCE = os.environ.get("FORCE_COLOR", "").lower() in {"1", "true", "yes", "on"}
_NO_COLOR = os.environ.get("NO_COLOR") is not None
_ENABLE = (_FORCE or sys.stdout.isatty()) and not _NO_COLOR
_COLORTERM = os.environ.get("COLORTERM", "").lower()
_USE_TRUECOLOR = _ENABLE and any(tok in _COLORTERM for tok in ("truecolor", "24bit"))


def _code(part: str) -> str:
    return f"\033[{part}m" if _ENABLE else ''


def _valid_hex(value: str) -> bool:
    h = value.lstrip('#')
    return len(h) == 6 and all(c in '0123456789abcdefABCDEF' for c in h)


def _hex_to_rgb(hex_code: str) -> tuple[int, int, int]:
    h = hex_code.lstrip('#')
    return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)


def _fg_256(r: int, g: int, b: int) -> str:
    """Approximate RGB on the xterm 256-color cube."""
    def to_6(x: int) -> int:
        return int(round(x / 255 * 5))
    return f"\033[38;5;{16 + 36 * to_6(r) + 6 * to_6(g) + to_6(b)}m"


def from_hex(hex_code: str) -> str:
    """ANSI foreground sequence for ``#rrggbb`` (empty when color is off or invalid)."""
    if not _ENABLE or not _valid_hex(hex_code):
        return ''
    r, g, b = _hex_to_rgb(hex_code)
    if _USE_TRUECOLOR:
        return f"\033[38;2;{r};{g};{b}m"
    return _fg_256(r, g, b)


RESET = _code('0')
BOLD = _code('1')
DIM = _code('2')
UNDERLINE = _code('4')
REVERSE = _code('7')

HEX_PRIMARY_DEFAULT = '#476EAE'
HEX_STATE_DEFAULTS = {
    TaskState.TODO: '#48B3AF',
    TaskState.ACTIVE: '#F6FF99',
    TaskState.BLOCKED: '#E5707E',
    TaskState.DONE: '#A7E399',
    TaskState.PARKED: '#9A9A9A',
}
HEX_TAG_DEFAULT = '#C3A6E8'


def _env_hex(name: str, default: str) -> str:
    value = os.environ.get(name, '')
    return '#' + value.lstrip('#') if _valid_hex(value) else default


HEX_PRIMARY = _env_hex('FRAME_COLOR_PRIMARY', HEX_PRIMARY_DEFAULT)
PRIMARY = from_hex(HEX_PRIMARY)
STATE_COLOR: Dict[TaskState, str] = {
    state: from_hex(_env_hex(f'FRAME_COLOR_{state.name}', default))
    for state, default in HEX_STATE_DEFAULTS.items()
}
TAG_COLOR = from_hex(HEX_TAG_DEFAULT)

HEADER_COLOR = PRIMARY + BOLD
ID_COLOR = PRIMARY + BOLD
EMPTY_COLOR = DIM + PRIMARY
STATUS_COLOR = DIM


def color(text: str, *styles: str) -> str:
    """Wrap ``text`` in ANSI styles."""
    if not _ENABLE:
        return text
    return ''.join(styles) + text + RESET


def tag_color(tag: str, tag_colors: Optional[Mapping[str, str]] = None) -> str:
    if tag_colors and tag in tag_colors:
        custom = from_hex(tag_colors[tag])
        if custom:
            return custom
    return TAG_COLOR


__all__ = [
    'color', 'tag_color', 'from_hex', 'RESET', 'BOLD', 'DIM', 'UNDERLINE', 'REVERSE',
    'STATE_COLOR', 'HEADER_COLOR', 'ID_COLOR', 'EMPTY_COLOR', 'STATUS_COLOR', 'PRIMARY',
]
