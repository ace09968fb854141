"""Persistent store for valuation runs, votes and results."""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Protocol
import fcntl
import json
import logging
import threading
import time
import uuid

from quorum.votes import ConsensusResult, Vote

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


class ValuationSink(Protocol):
    def record_vote(self, run_id: str, vote: Vote) -> None:
        ...

    def record_result(self, run_id: str, result: ConsensusResult) -> None:
        ...


@dataclass
class ValuationStore:
    data_dir: Path

    def _runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def run_dir(self, run_id: str) -> Path:
        return self._runs_dir() / run_id

    def _latest_path(self) -> Path:
        return self.data_dir / "latest.json"

    def start_run(self, run_id: str, meta: Dict[str, Any] | None = None) -> None:
        payload = {
            "id": run_id,
            "created_at": _now(),
            "status": "running",
            "meta": meta or {},
            "votes": [],
        }
        self._write_run(run_id, payload)

    def record_vote(self, run_id: str, vote: Vote) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run.setdefault("votes", []).append(vote.to_dict())
            return run
        self._locked_update(run_id, _update)

    def update_meta(self, run_id: str, meta: Dict[str, Any]) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            current = run.get("meta", {}) or {}
            current.update(meta)
            run["meta"] = current
            return run
        self._locked_update(run_id, _update)

    def record_result(self, run_id: str, result: ConsensusResult) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = "complete"
            run["completed_at"] = _now()
            run["result"] = result.to_dict()
            return run
        run = self._locked_update(run_id, _update)
        if not run:
            return
        self._latest_path().parent.mkdir(parents=True, exist_ok=True)
        self._latest_path().write_text(json.dumps(run, indent=2))

    def fail_run(self, run_id: str, error: str) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = "failed"
            run["error"] = error
            run["completed_at"] = _now()
            return run
        self._locked_update(run_id, _update)

    def get_run(self, run_id: str) -> Dict[str, Any] | None:
        path = self._runs_dir() / run_id / "run.json"
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning(f"Unreadable run file {path}")
            return None

    def latest(self) -> Dict[str, Any] | None:
        if not self._latest_path().exists():
            return None
        try:
            return json.loads(self._latest_path().read_text())
        except (OSError, json.JSONDecodeError):
            return None

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        runs: List[Dict[str, Any]] = []
        if not self._runs_dir().exists():
            return runs
        for run_dir in sorted(self._runs_dir().iterdir(), reverse=True)[:limit]:
            path = run_dir / "run.json"
            if not path.exists():
                continue
            try:
                runs.append(json.loads(path.read_text()))
            except (OSError, json.JSONDecodeError):
                continue
        return runs

    def _write_run(self, run_id: str, payload: Dict[str, Any]) -> None:
        run_dir = self._runs_dir() / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / "run.json").write_text(json.dumps(payload, indent=2))

    def _locked_update(self, run_id: str, updater) -> Dict[str, Any] | None:
        path = self._runs_dir() / run_id / "run.json"
        if not path.exists():
            self.start_run(run_id)
        with path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.seek(0)
                data = handle.read()
                if not data.strip():
                    return None
                run = json.loads(data)
                updated = updater(run)
                handle.seek(0)
                handle.truncate()
                handle.write(json.dumps(updated, indent=2))
                return updated
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class BackgroundSink:
    """Runs sink writes on a worker thread; failures are logged, never raised.

    A single worker keeps writes for a run in submission order.
    """

    def __init__(self, sink: Any, max_workers: int = 1) -> None:
        self.sink = sink
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="quorum-sink")
        self._pending: set = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future | None:
        if self._closed:
            logger.warning(f"Sink closed; dropping {getattr(fn, '__name__', fn)}")
            return None
        try:
            future = self._executor.submit(self._guarded, fn, *args)
        except RuntimeError as exc:
            logger.warning(f"Sink rejected write: {exc}")
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _guarded(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.warning(f"Sink write {getattr(fn, '__name__', fn)} failed", exc_info=True)

    def start_run(self, run_id: str, meta: Dict[str, Any] | None = None) -> None:
        start = getattr(self.sink, "start_run", None)
        if start is not None:
            self.submit(start, run_id, meta or {})

    def record_vote(self, run_id: str, vote: Vote) -> None:
        self.submit(self.sink.record_vote, run_id, vote)

    def update_meta(self, run_id: str, meta: Dict[str, Any]) -> None:
        update = getattr(self.sink, "update_meta", None)
        if update is not None:
            self.submit(update, run_id, meta)

    def fail_run(self, run_id: str, error: str) -> None:
        fail = getattr(self.sink, "fail_run", None)
        if fail is not None:
            self.submit(fail, run_id, error)

    def record_result(self, run_id: str, result: ConsensusResult) -> None:
        self.submit(self.sink.record_result, run_id, result)

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                logger.warning("Timed out waiting for sink write", exc_info=True)

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=True)
