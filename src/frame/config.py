"""project.toml access.

The config is held as a tomlkit document so targeted edits keep the user's
comments, key order and formatting. The typed accessors below are computed
from the document on each call, so they always reflect the latest edit.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .errors import ConfigError, IoFailureError

logger = logging.getLogger(__name__)

CONFIG_FILE = "project.toml"
TRACK_STATES = ("active", "shelved", "archived")


@dataclass
class TrackConfig:
    id: str
    name: str
    state: str = "active"
    file: str = ""

    def __post_init__(self) -> None:
        if not self.file:
            self.file = f"tracks/{self.id}.md"


@dataclass
class CleanConfig:
    auto_clean: bool = True
    done_threshold: int = 100
    done_retain: int = 10


@dataclass
class UiConfig:
    tag_colors: Dict[str, str] = field(default_factory=dict)
    default_tags: List[str] = field(default_factory=list)


def _plain(value):
    """tomlkit items -> plain python values."""
    unwrap = getattr(value, "unwrap", None)
    return unwrap() if unwrap is not None else value


class ProjectConfig:
    def __init__(self, doc: tomlkit.TOMLDocument):
        self.doc = doc

    # -------------------- loading / dumping --------------------
    @classmethod
    def parse(cls, text: str) -> "ProjectConfig":
        try:
            doc = tomlkit.parse(text)
        except TOMLKitError as exc:
            raise ConfigError(f"invalid {CONFIG_FILE}: {exc}") from exc
        config = cls(doc)
        if not config.name:
            raise ConfigError(f"invalid {CONFIG_FILE}: missing [project] name")
        return config

    @classmethod
    def load(cls, frame_dir: Path) -> "ProjectConfig":
        path = Path(frame_dir) / CONFIG_FILE
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        return cls.parse(text)

    @classmethod
    def new(cls, name: str) -> "ProjectConfig":
        doc = tomlkit.document()
        doc.add(tomlkit.comment("frame project configuration"))
        project = tomlkit.table()
        project.add("name", name)
        doc.add("project", project)
        doc.add("tracks", tomlkit.aot())
        ids = tomlkit.table(is_super_table=True)
        ids.add("prefixes", tomlkit.table())
        doc.add("ids", ids)
        return cls(doc)

    def dumps(self) -> str:
        return tomlkit.dumps(self.doc)

    def copy(self) -> "ProjectConfig":
        return ProjectConfig(tomlkit.parse(self.dumps()))

    # -------------------- typed view --------------------
    @property
    def name(self) -> str:
        project = self.doc.get("project")
        return str(project.get("name", "")) if project is not None else ""

    @property
    def tracks(self) -> List[TrackConfig]:
        out: List[TrackConfig] = []
        for table in self.doc.get("tracks", []):
            out.append(TrackConfig(
                id=str(table["id"]),
                name=str(table.get("name", table["id"])),
                state=str(table.get("state", "active")),
                file=str(table.get("file", "")),
            ))
        return out

    def track(self, track_id: str) -> Optional[TrackConfig]:
        for tc in self.tracks:
            if tc.id == track_id:
                return tc
        return None

    def track_index(self, track_id: str) -> Optional[int]:
        for i, tc in enumerate(self.tracks):
            if tc.id == track_id:
                return i
        return None

    def tracks_in_state(self, state: str) -> List[TrackConfig]:
        return [tc for tc in self.tracks if tc.state == state]

    @property
    def prefixes(self) -> Dict[str, str]:
        ids = self.doc.get("ids")
        if ids is None or "prefixes" not in ids:
            return {}
        return {str(k): str(v) for k, v in ids["prefixes"].items()}

    def prefix_for(self, track_id: str) -> Optional[str]:
        return self.prefixes.get(track_id)

    @property
    def clean(self) -> CleanConfig:
        section = _plain(self.doc.get("clean", {})) or {}
        defaults = CleanConfig()
        return CleanConfig(
            auto_clean=bool(section.get("auto_clean", defaults.auto_clean)),
            done_threshold=int(section.get("done_threshold", defaults.done_threshold)),
            done_retain=int(section.get("done_retain", defaults.done_retain)),
        )

    @property
    def ui(self) -> UiConfig:
        section = _plain(self.doc.get("ui", {})) or {}
        return UiConfig(
            tag_colors=dict(section.get("tag_colors", {})),
            default_tags=list(section.get("default_tags", [])),
        )

    # -------------------- targeted editors --------------------
    def _track_tables(self):
        if "tracks" not in self.doc:
            self.doc.add("tracks", tomlkit.aot())
        return self.doc["tracks"]

    def _track_table(self, track_id: str):
        for table in self.doc.get("tracks", []):
            if str(table.get("id")) == track_id:
                return table
        return None

    def add_track(self, track: TrackConfig, index: Optional[int] = None) -> None:
        table = tomlkit.table()
        table.add("id", track.id)
        table.add("name", track.name)
        table.add("state", track.state)
        table.add("file", track.file)
        tables = self._track_tables()
        if index is None or index >= len(tables):
            tables.append(table)
        else:
            tables.insert(index, table)

    def remove_track(self, track_id: str) -> Optional[int]:
        """Remove a track entry, returning the index it had."""
        tables = self.doc.get("tracks")
        if tables is None:
            return None
        for i, table in enumerate(tables):
            if str(table.get("id")) == track_id:
                del tables[i]
                return i
        return None

    def set_track_state(self, track_id: str, state: str) -> None:
        if state not in TRACK_STATES:
            raise ValueError(f"unknown track state: {state}")
        table = self._track_table(track_id)
        if table is not None:
            table["state"] = state

    def set_track_name(self, track_id: str, name: str) -> None:
        table = self._track_table(track_id)
        if table is not None:
            table["name"] = name

    def set_track_id(self, old_id: str, new_id: str) -> None:
        table = self._track_table(old_id)
        if table is not None:
            table["id"] = new_id
            table["file"] = f"tracks/{new_id}.md"

    def set_track_file(self, track_id: str, file: str) -> None:
        table = self._track_table(track_id)
        if table is not None:
            table["file"] = file

    def _prefix_table(self):
        if "ids" not in self.doc:
            self.doc.add("ids", tomlkit.table(is_super_table=True))
        ids = self.doc["ids"]
        if "prefixes" not in ids:
            ids.add("prefixes", tomlkit.table())
        return ids["prefixes"]

    def set_prefix(self, track_id: str, prefix: str) -> None:
        self._prefix_table()[track_id] = prefix

    def remove_prefix(self, track_id: str) -> Optional[str]:
        table = self._prefix_table()
        if track_id not in table:
            return None
        old = str(table[track_id])
        del table[track_id]
        return old

    def rename_prefix_key(self, old_id: str, new_id: str) -> None:
        table = self._prefix_table()
        if old_id in table:
            value = str(table[old_id])
            del table[old_id]
            table[new_id] = value

    def set_tag_color(self, tag: str, hex_color: str) -> None:
        if "ui" not in self.doc:
            self.doc.add("ui", tomlkit.table())
        ui = self.doc["ui"]
        if "tag_colors" not in ui:
            ui.add("tag_colors", tomlkit.table())
        ui["tag_colors"][tag] = hex_color


def env_override(name: str, default: Optional[str] = None) -> Optional[str]:
    """``FRAME_<NAME>`` environment lookup."""
    value = os.environ.get(f"FRAME_{name.upper()}")
    return value if value not in (None, "") else default
