from __future__ import annotations

"""Content-addressed memory of observed page states.

The store keeps a session-scoped index in memory and persists every new state
through a pluggable `MemoryBackend`. The local file backend lays data out as

    <root>/states/<fingerprint>.json      one record per page state
    <root>/sessions/<session_id>.jsonl    ordered visitation log
    <root>/screenshots/<fingerprint>.png

State files are written atomically and the log is append-only, so an
interrupted write loses at most the record being written.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import json
import logging
import os
import tempfile
import time

from .errors import StorageError
from .knowledge import InteractiveElement, PageSnapshot, PageState
from .state_matcher import StateMatcher
from .urls import canonicalize_url

logger = logging.getLogger(__name__)


class MemoryBackend(ABC):
    """Persistence contract. A remote/shared store implements the same methods."""

    name = "abstract"

    @abstractmethod
    def write_state(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def read_state(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def append_visit(self, session_id: str, fingerprint: str) -> None:
        ...

    @abstractmethod
    def read_visits(self, session_id: str) -> List[str]:
        ...

    @abstractmethod
    def write_screenshot(self, fingerprint: str, data: bytes) -> Optional[str]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class InMemoryBackend(MemoryBackend):
    """Keeps everything in process memory. Used in tests and as a fallback."""

    name = "memory"

    def __init__(self) -> None:
        self._states: Dict[str, Dict[str, Any]] = {}
        self._visits: Dict[str, List[str]] = {}

    def write_state(self, record: Dict[str, Any]) -> None:
        self._states[record["fingerprint"]] = json.loads(json.dumps(record))

    def read_state(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        rec = self._states.get(fingerprint)
        return dict(rec) if rec is not None else None

    def append_visit(self, session_id: str, fingerprint: str) -> None:
        self._visits.setdefault(session_id, []).append(fingerprint)

    def read_visits(self, session_id: str) -> List[str]:
        return list(self._visits.get(session_id, []))

    def write_screenshot(self, fingerprint: str, data: bytes) -> Optional[str]:
        return None

    def clear(self) -> None:
        self._states.clear()
        self._visits.clear()


class LocalFileBackend(MemoryBackend):
    """Default backend: JSON files under a local directory."""

    name = "local"

    def __init__(self, root: str | os.PathLike[str], max_states: int = 1000) -> None:
        self.root = os.fspath(root)
        self.max_states = max_states
        self._states_dir = os.path.join(self.root, "states")
        self._sessions_dir = os.path.join(self.root, "sessions")
        self._screens_dir = os.path.join(self.root, "screenshots")
        try:
            for d in (self._states_dir, self._sessions_dir, self._screens_dir):
                os.makedirs(d, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create memory directory {self.root}: {exc}") from exc

    # --- states -----------------------------------------------------------
    def _state_path(self, fingerprint: str) -> str:
        return os.path.join(self._states_dir, f"{fingerprint}.json")

    def write_state(self, record: Dict[str, Any]) -> None:
        fingerprint = record["fingerprint"]
        payload = json.dumps(record, indent=2, ensure_ascii=False).encode("utf-8")
        self._atomic_write(self._state_path(fingerprint), payload, fingerprint)
        self._enforce_retention()

    def read_state(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        path = self._state_path(fingerprint)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable state file %s: %s", path, exc)
            return None

    # --- visitation log ---------------------------------------------------
    def _log_path(self, session_id: str) -> str:
        return os.path.join(self._sessions_dir, f"{session_id}.jsonl")

    def append_visit(self, session_id: str, fingerprint: str) -> None:
        path = self._log_path(session_id)
        line = json.dumps({"fingerprint": fingerprint, "timestamp": time.time()}) + "\n"
        try:
            with open(path, "a+b") as fh:
                # a torn previous write leaves no trailing newline; isolate it on its own line
                if fh.tell() > 0:
                    fh.seek(-1, os.SEEK_END)
                    if fh.read(1) != b"\n":
                        line = "\n" + line
                fh.write(line.encode("utf-8"))
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise StorageError(f"cannot append to visitation log {path}: {exc}", fingerprint) from exc

    def read_visits(self, session_id: str) -> List[str]:
        path = self._log_path(session_id)
        if not os.path.exists(path):
            return []
        visits: List[str] = []
        with open(path, "r", encoding="utf-8") as fh:
            for lineno, raw in enumerate(fh, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    visits.append(json.loads(raw)["fingerprint"])
                except (json.JSONDecodeError, KeyError, TypeError):
                    logger.warning("Discarding incomplete log record %s:%d", path, lineno)
        return visits

    # --- screenshots ------------------------------------------------------
    def write_screenshot(self, fingerprint: str, data: bytes) -> Optional[str]:
        path = os.path.join(self._screens_dir, f"{fingerprint}.png")
        self._atomic_write(path, data, fingerprint)
        return path

    def clear(self) -> None:
        for d in (self._states_dir, self._sessions_dir, self._screens_dir):
            for name in os.listdir(d):
                try:
                    os.unlink(os.path.join(d, name))
                except OSError as exc:
                    raise StorageError(f"cannot clear {d}: {exc}") from exc
        logger.info("Cleared memory storage at %s", self.root)

    # ------------------------------------------------------------------
    def _atomic_write(self, path: str, payload: bytes, fingerprint: str) -> None:
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=os.path.dirname(path))
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"cannot write {path}: {exc}", fingerprint) from exc

    def _enforce_retention(self) -> None:
        names = [n for n in os.listdir(self._states_dir) if n.endswith(".json")]
        if len(names) <= self.max_states:
            return
        paths = sorted((os.path.join(self._states_dir, n) for n in names), key=os.path.getmtime)
        for path in paths[: len(paths) - self.max_states]:
            try:
                os.unlink(path)
            except OSError:
                logger.debug("Could not prune %s", path)
        logger.debug("Pruned %d old state files", len(paths) - self.max_states)


class MemoryStore:
    """Session-scoped registry of page states keyed by content fingerprint.

    A bare store keeps its data in process memory, since a file backend needs
    a directory to own. `SessionOrchestrator` builds the store with a
    `LocalFileBackend` rooted at `config.memory_dir` unless memory is disabled.
    """

    def __init__(
        self,
        session_id: str,
        backend: MemoryBackend | None = None,
        enabled: bool = True,
        matcher: StateMatcher | None = None,
    ) -> None:
        self.session_id = session_id
        self.enabled = enabled
        self._backend = backend if backend is not None else InMemoryBackend()
        self._matcher = matcher or StateMatcher()
        self._by_fp: Dict[str, PageState] = {}
        self._by_url: Dict[str, str] = {}
        self._visits: List[PageState] = []

    @property
    def backend(self) -> MemoryBackend:
        return self._backend

    def __len__(self) -> int:
        return len(self._visits)

    # ------------------------------------------------------------------
    def record(
        self,
        snapshot: PageSnapshot,
        depth: int,
        links: Iterable[str] = (),
        elements: Iterable[InteractiveElement] = (),
        screenshot: Optional[bytes] = None,
        link_labels: Sequence[Tuple[str, str]] = (),
    ) -> Tuple[PageState, bool]:
        """Record an observed page and tell whether it is new to this session.

        Raises `StorageError` when the backend cannot persist a new state; in
        that case the in-memory index is left untouched.
        """
        fingerprint = self._matcher.signature(snapshot)
        url = canonicalize_url(snapshot.url)

        if self.enabled and fingerprint in self._by_fp:
            existing = self._by_fp[fingerprint]
            # a different URL rendering the same content maps onto the known state
            self._by_url.setdefault(url, fingerprint)
            logger.debug("Known state %s for %s", fingerprint[:12], url)
            return existing, False

        screenshot_path = None
        if screenshot and self.enabled:
            screenshot_path = self._backend.write_screenshot(fingerprint, screenshot)

        state = PageState(
            url=url,
            fingerprint=fingerprint,
            title=snapshot.title or "",
            depth=depth,
            links=tuple(dict.fromkeys(links)),
            elements=tuple(elements),
            screenshot_path=screenshot_path,
            link_labels=tuple(link_labels),
        )

        if self.enabled:
            self._backend.write_state(state.to_record())
            self._backend.append_visit(self.session_id, fingerprint)
            self._by_url[url] = fingerprint
        self._by_fp[fingerprint] = state
        self._visits.append(state)
        logger.debug("Recorded new state %s (%s) at depth %d", fingerprint[:12], url, depth)
        return state, True

    def lookup(self, fingerprint: str) -> Optional[PageState]:
        return self._by_fp.get(fingerprint)

    def lookup_url(self, url: str) -> Optional[PageState]:
        fp = self._by_url.get(canonicalize_url(url))
        return self._by_fp.get(fp) if fp else None

    def has_url(self, url: str) -> bool:
        """True if a page at `url` was recorded. Always False with memory disabled."""
        return self.enabled and canonicalize_url(url) in self._by_url

    def list_visited(self) -> List[PageState]:
        """Visitation-ordered copy; iterating it has no side effects."""
        return list(self._visits)

    # ------------------------------------------------------------------
    def detach_backend(self) -> None:
        """Continue with in-memory persistence only after a storage failure."""
        if type(self._backend) is InMemoryBackend:
            return
        logger.warning("Memory backend '%s' failed; continuing with in-memory state", self._backend.name)
        fallback = InMemoryBackend()
        for state in self._visits:
            fallback.write_state(state.to_record())
            fallback.append_visit(self.session_id, state.fingerprint)
        self._backend = fallback

    def load(self) -> int:
        """Rebuild the session index from the backend's visitation log.

        Log entries whose state record is missing (an interrupted write) are
        skipped. Returns the number of states restored.
        """
        self._by_fp.clear()
        self._by_url.clear()
        self._visits.clear()
        for fingerprint in self._backend.read_visits(self.session_id):
            if fingerprint in self._by_fp:
                continue
            record = self._backend.read_state(fingerprint)
            if record is None:
                logger.warning("Visitation log references missing state %s; skipping", fingerprint)
                continue
            state = PageState.from_record(record)
            self._by_fp[fingerprint] = state
            self._by_url[state.url] = fingerprint
            self._visits.append(state)
        return len(self._visits)

    def clear(self) -> None:
        self._backend.clear()
        self._by_fp.clear()
        self._by_url.clear()
        self._visits.clear()
