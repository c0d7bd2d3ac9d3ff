"""Persisted interactive-session state (``frame/.state.json``)."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

STATE_FILE = ".state.json"
MAX_SEARCH_HISTORY = 200


@dataclass
class TrackUiState:
    cursor: int = 0
    expanded: List[str] = field(default_factory=list)
    scroll_offset: int = 0


@dataclass
class UiState:
    view: str = "track"
    active_track: str = ""
    tracks: Dict[str, TrackUiState] = field(default_factory=dict)
    last_search: Optional[str] = None
    search_history: List[str] = field(default_factory=list)

    def track_state(self, track_id: str) -> TrackUiState:
        return self.tracks.setdefault(track_id, TrackUiState())

    def remember_search(self, pattern: str) -> None:
        """Most recent first, deduplicated, capped."""
        self.last_search = pattern
        history = [p for p in self.search_history if p != pattern]
        history.insert(0, pattern)
        self.search_history = history[:MAX_SEARCH_HISTORY]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for ts in data["tracks"].values():
            ts["expanded"] = sorted(ts["expanded"])
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UiState":
        tracks = {
            str(k): TrackUiState(
                cursor=int(v.get("cursor", 0)),
                expanded=list(v.get("expanded", [])),
                scroll_offset=int(v.get("scroll_offset", 0)),
            )
            for k, v in dict(data.get("tracks", {})).items()
        }
        return cls(
            view=str(data.get("view", "track")),
            active_track=str(data.get("active_track", "")),
            tracks=tracks,
            last_search=data.get("last_search"),
            search_history=list(data.get("search_history", []))[:MAX_SEARCH_HISTORY],
        )


def read_ui_state(frame_dir: Path) -> Optional[UiState]:
    """Saved state, or None when missing or unreadable (defaults apply)."""
    path = Path(frame_dir) / STATE_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return UiState.from_dict(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("ignoring unreadable %s: %s", path, exc)
        return None


def write_ui_state(frame_dir: Path, state: UiState) -> None:
    from .storage import atomic_write

    atomic_write(Path(frame_dir) / STATE_FILE, json.dumps(state.to_dict(), indent=4) + "\n")
