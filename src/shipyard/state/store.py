from __future__ import annotations

import json
import os
import re
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from shipyard.models import utcnow_iso

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str) -> str:
    """Map a repository or run name onto a single path component."""
    normalized = value.strip().replace("/", "__")
    normalized = _UNSAFE_NAME.sub("_", normalized).strip(".")
    if not normalized:
        raise ValueError(f"Cannot derive a state path from {value!r}")
    return normalized


class StateDirectory:
    """Crash-consistent JSON records under one directory.

    Every record is wrapped in an envelope and written to a temporary sibling before
    being renamed or linked into place, so readers either see a whole record or none.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()
        self.locks_dir = self.root / "locks"
        self.runs_dir = self.root / "runs"
        self.archive_dir = self.runs_dir / "archive"
        self.recovery_log = self.root / "recovery.jsonl"
        for directory in (self.locks_dir, self.runs_dir, self.archive_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def lock_path(self, repo: str) -> Path:
        return self.locks_dir / f"{safe_name(repo)}.lock"

    def run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{safe_name(run_id)}.json"

    def _envelope(self, data: dict[str, Any]) -> str:
        payload = {
            "schema_version": self.SCHEMA_VERSION,
            "written_at": utcnow_iso(),
            "data": data,
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    def _write_temp(self, directory: Path, serialized: str) -> Path:
        fd, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return Path(temp_name)

    def write_json(self, path: Path, data: dict[str, Any]) -> None:
        temp_path = self._write_temp(path.parent, self._envelope(data))
        try:
            os.replace(temp_path, path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def create_exclusive(self, path: Path, data: dict[str, Any]) -> bool:
        """Create ``path`` holding ``data`` only if it does not exist yet.

        ``os.link`` fails atomically when the destination exists, and the linked inode
        is already fully written, so a competing reader never observes a half record.
        """
        temp_path = self._write_temp(path.parent, self._envelope(data))
        try:
            os.link(temp_path, path)
        except FileExistsError:
            return False
        finally:
            temp_path.unlink(missing_ok=True)
        return True

    def read_json(self, path: Path) -> dict[str, Any] | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict) or "data" not in payload:
            return None
        if int(payload.get("schema_version") or 0) != self.SCHEMA_VERSION:
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    def iter_runs(self) -> Iterator[tuple[Path, dict[str, Any]]]:
        for path in sorted(self.runs_dir.glob("*.json")):
            record = self.read_json(path)
            if record is not None:
                yield path, record

    def append_recovery(self, entry: dict[str, Any]) -> None:
        payload = dict(entry)
        payload.setdefault("at", utcnow_iso())
        line = json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n"
        fd = os.open(self.recovery_log, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
        try:
            os.write(fd, line.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)

    def recovery_entries(self) -> list[dict[str, Any]]:
        if not self.recovery_log.exists():
            return []
        entries: list[dict[str, Any]] = []
        for raw_line in self.recovery_log.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                entries.append(parsed)
        return entries
