"""
File collaborator: a network stored as a directory of JSON records.

  <network-dir>/
    config.json          {"properties": {<global defaults>}}
    <node-id>.json       one flat record per node (id = file name)

The network id is the directory name. Writing is idempotent: a file whose
content would not change is left untouched, and record files for nodes that
no longer exist are removed.
"""

from __future__ import annotations
import json
from pathlib import Path
from typing import Optional
from loguru import logger

from network_graph.errors import InvalidRecord, PersistenceFailure
from network_graph.graph import NetworkGraph, NetworkSnapshot
from .adapter import decode_network, encode_network

CONFIG_FILE = "config.json"


def _dump(name: str, data: dict) -> str:
    try:
        return json.dumps(data, indent=2) + "\n"
    except (TypeError, ValueError) as exc:
        raise PersistenceFailure(f"Cannot serialize {name}: {exc}") from exc


class NetworkDirectory:
    def __init__(self, path):
        self.path = Path(path)

    @property
    def network_id(self) -> str:
        return self.path.resolve().name

    def exists(self) -> bool:
        return self.path.is_dir()

    def record_files(self) -> list[Path]:
        if not self.exists():
            return []
        return sorted(p for p in self.path.glob("*.json") if p.name != CONFIG_FILE)

    # ── Read ─────────────────────────────────────────

    def _read_json(self, path: Path) -> dict:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceFailure(f"Cannot read {path}: {exc}") from exc
        except ValueError as exc:
            raise InvalidRecord(f"{path.name} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidRecord(f"{path.name} must hold a JSON object")
        return data

    def read(self) -> tuple[list[dict], dict]:
        """Raw node records (with "id" set from the file name) and the config record."""
        if not self.exists():
            raise PersistenceFailure(f"Network directory {self.path} does not exist")
        records = [{**self._read_json(p), "id": p.stem} for p in self.record_files()]
        config_path = self.path / CONFIG_FILE
        config = self._read_json(config_path) if config_path.exists() else {}
        logger.debug(f"Read {len(records)} records from {self.path}")
        return records, config

    def load_snapshot(self) -> NetworkSnapshot:
        return decode_network(*self.read())

    # ── Write ────────────────────────────────────────

    def _write_if_changed(self, path: Path, text: str) -> bool:
        try:
            if path.exists() and path.read_text(encoding="utf-8") == text:
                return False
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"Cannot write {path}: {exc}") from exc
        return True

    def write(self, records: list[dict], config: Optional[dict] = None) -> list[Path]:
        """Write records and config; returns the files that were (re)written or removed."""
        # serialize everything before the disk is touched
        texts: dict[Path, str] = {}
        for record in records:
            node_id = record.get("id")
            if not node_id or "/" in node_id or "\\" in node_id:
                raise InvalidRecord(f"Record id {node_id!r} cannot be used as a file name")
            body = {k: v for k, v in record.items() if k != "id"}
            texts[self.path / f"{node_id}.json"] = _dump(node_id, body)
        texts[self.path / CONFIG_FILE] = _dump(CONFIG_FILE, config or {"properties": {}})
        wanted = {path.name for path in texts}

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceFailure(f"Cannot create {self.path}: {exc}") from exc

        changed = [path for path, text in texts.items() if self._write_if_changed(path, text)]

        for stale in self.record_files():
            if stale.name not in wanted:
                try:
                    stale.unlink()
                except OSError as exc:
                    raise PersistenceFailure(f"Cannot remove {stale}: {exc}") from exc
                changed.append(stale)

        logger.info(f"Wrote network {self.network_id}: {len(records)} records, {len(changed)} file(s) changed")
        return changed

    def save_graph(self, graph: NetworkGraph) -> list[Path]:
        return self.write(*encode_network(graph))
