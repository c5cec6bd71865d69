from __future__ import annotations

import os
import socket
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shipyard.errors import LockConflict
from shipyard.models import Run
from shipyard.state.store import StateDirectory

GUARD_STALE_SECONDS = 30.0


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class LockHandle:
    repo: str
    run_id: str
    path: Path
    acquired_at: str


@dataclass(slots=True)
class LockState:
    repo: str
    held: bool
    stale: bool = False
    holder_run_id: str | None = None
    acquired_at: str | None = None
    heartbeat_at: str | None = None
    age_seconds: float | None = None
    hostname: str | None = None
    pid: int | None = None

    @property
    def live(self) -> bool:
        return self.held and not self.stale

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "held": self.held,
            "stale": self.stale,
            "holder_run_id": self.holder_run_id,
            "acquired_at": self.acquired_at,
            "heartbeat_at": self.heartbeat_at,
            "age_seconds": None if self.age_seconds is None else round(self.age_seconds, 1),
            "hostname": self.hostname,
            "pid": self.pid,
        }


class LockManager:
    """Per-repository mutual exclusion backed by the shared state directory.

    This is the only writer of the state directory: lock records, run records and the
    recovery log all go through it.
    """

    def __init__(
        self,
        store: StateDirectory,
        *,
        stale_after_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
        guard_timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.guard_timeout_seconds = guard_timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    def _lock_record(self, repo: str, run_id: str) -> dict[str, Any]:
        now = self.clock()
        return {
            "repo": repo,
            "run_id": run_id,
            "acquired_epoch": now,
            "heartbeat_epoch": now,
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
        }

    def _state_from_record(
        self, repo: str, path: Path, record: dict[str, Any] | None
    ) -> LockState:
        now = self.clock()
        if record is None:
            # Unreadable record: only the file age says anything about liveness.
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                return LockState(repo=repo, held=False)
            age = max(0.0, now - mtime)
            return LockState(
                repo=repo,
                held=True,
                stale=age > self.stale_after_seconds,
                heartbeat_at=_iso(mtime),
                age_seconds=age,
            )

        heartbeat = float(record.get("heartbeat_epoch") or record.get("acquired_epoch") or 0)
        acquired = float(record.get("acquired_epoch") or heartbeat)
        age = max(0.0, now - heartbeat)
        return LockState(
            repo=repo,
            held=True,
            stale=age > self.stale_after_seconds,
            holder_run_id=record.get("run_id"),
            acquired_at=_iso(acquired),
            heartbeat_at=_iso(heartbeat),
            age_seconds=age,
            hostname=record.get("hostname"),
            pid=record.get("pid"),
        )

    def inspect(self, repo: str) -> LockState:
        path = self.store.lock_path(repo)
        if not path.exists():
            return LockState(repo=repo, held=False)
        return self._state_from_record(repo, path, self.store.read_json(path))

    def list_locks(self) -> list[LockState]:
        states: list[LockState] = []
        for path in sorted(self.store.locks_dir.glob("*.lock")):
            record = self.store.read_json(path)
            repo = str(record.get("repo")) if record and record.get("repo") else path.stem
            states.append(self._state_from_record(repo, path, record))
        return states

    def _guard_path(self, repo: str) -> Path:
        path = self.store.lock_path(repo)
        return path.with_name(f"{path.name}.guard")

    @contextmanager
    def _guard(self, repo: str):
        """Serialize every replace or delete of one repository's lock record.

        Creating a lock needs no guard because ``create_exclusive`` only succeeds on an
        absent path. A guard left behind by a crashed process is broken once it is older
        than ``GUARD_STALE_SECONDS``.
        """
        guard = self._guard_path(repo)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                try:
                    if time.time() - guard.stat().st_mtime > GUARD_STALE_SECONDS:
                        guard.unlink(missing_ok=True)
                        continue
                except FileNotFoundError:
                    continue
                if time.monotonic() - start > self.guard_timeout_seconds:
                    raise LockConflict(repo) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            guard.unlink(missing_ok=True)

    def _reclaim(self, repo: str, stale: LockState, reclaimed_by: str) -> None:
        path = self.store.lock_path(repo)
        with self._guard(repo):
            current = self._state_from_record(repo, path, self.store.read_json(path))
            if not current.held:
                return
            if not current.stale or current.holder_run_id != stale.holder_run_id:
                raise LockConflict(repo, current.holder_run_id)
            self.store.append_recovery(
                {
                    "event": "stale_lock_reclaimed",
                    "repo": repo,
                    "stale_run_id": current.holder_run_id,
                    "heartbeat_at": current.heartbeat_at,
                    "age_seconds": current.age_seconds,
                    "reclaimed_by": reclaimed_by,
                }
            )
            path.unlink(missing_ok=True)

    def acquire(self, repo: str, run_id: str) -> LockHandle:
        path = self.store.lock_path(repo)
        for _ in range(3):
            record = self._lock_record(repo, run_id)
            if self.store.create_exclusive(path, record):
                self.archive_runs(repo, keep_run_id=run_id)
                return LockHandle(
                    repo=repo,
                    run_id=run_id,
                    path=path,
                    acquired_at=_iso(record["acquired_epoch"]),
                )
            state = self._state_from_record(repo, path, self.store.read_json(path))
            if not state.held:
                continue
            if not state.stale:
                raise LockConflict(repo, state.holder_run_id)
            self._reclaim(repo, state, reclaimed_by=run_id)
        raise LockConflict(repo)

    def heartbeat(self, handle: LockHandle) -> None:
        with self._guard(handle.repo):
            record = self.store.read_json(handle.path)
            if record is None or record.get("run_id") != handle.run_id:
                raise LockConflict(handle.repo, record.get("run_id") if record else None)
            record["heartbeat_epoch"] = self.clock()
            self.store.write_json(handle.path, record)

    def release(self, handle: LockHandle) -> None:
        try:
            with self._guard(handle.repo):
                record = self.store.read_json(handle.path)
                if record is None or record.get("run_id") != handle.run_id:
                    return
                handle.path.unlink(missing_ok=True)
        except LockConflict:
            # Guard never freed: the record goes stale and is reclaimed later.
            return

    def sweep(self) -> list[LockState]:
        """Release stale locks and close out runs that died while holding them."""
        reclaimed: list[LockState] = []
        for state in self.list_locks():
            if not state.stale:
                continue
            try:
                self._reclaim(state.repo, state, reclaimed_by="sweep")
            except LockConflict:
                continue
            reclaimed.append(state)

        for path, record in self.store.iter_runs():
            if record.get("status") != "running":
                continue
            lock = self.inspect(str(record.get("repo", "")))
            if lock.live and lock.holder_run_id == record.get("run_id"):
                continue
            record["status"] = "error"
            record["ended_at"] = record.get("ended_at") or _iso(self.clock())
            errors = record.get("errors") if isinstance(record.get("errors"), list) else []
            errors.append("Run abandoned without releasing its lock.")
            record["errors"] = errors
            self.store.write_json(path, record)
            self.store.append_recovery(
                {
                    "event": "abandoned_run_closed",
                    "repo": record.get("repo"),
                    "run_id": record.get("run_id"),
                }
            )
        return reclaimed

    def record_run(self, run: Run) -> None:
        self.store.write_json(self.store.run_path(run.run_id), run.to_record())

    def load_run(self, run_id: str) -> dict[str, Any] | None:
        return self.store.read_json(self.store.run_path(run_id))

    def runs_for(self, repo: str) -> list[dict[str, Any]]:
        return [record for _, record in self.store.iter_runs() if record.get("repo") == repo]

    def archive_runs(self, repo: str, *, keep_run_id: str) -> None:
        for path, record in self.store.iter_runs():
            if record.get("repo") != repo or record.get("run_id") == keep_run_id:
                continue
            os.replace(path, self.store.archive_dir / path.name)

    def recovery_entries(self) -> list[dict[str, Any]]:
        return self.store.recovery_entries()
