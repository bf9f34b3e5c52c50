"""Repository for sandboxes, releases and the execution ledger.

Records live in memory and, when a path is given, are persisted to a JSON
state file (default .states/stackrun.json, override with $STACKRUN_STATE).
Log lines are appended to a JSON-lines file beside it
(stackrun.lines.jsonl), so streaming output never rewrites the state file.
Log lines are unique on (execution_id, stream, line_number); a second
insert with the same key is ignored.
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Union

from state.models import (
    STREAMS,
    Execution,
    ExecutionLogLine,
    OwnerRef,
    Release,
    Sandbox,
    validate_env,
)

logger = logging.getLogger(__name__)

Owner = Union[Sandbox, Release]


def default_state_path() -> Path:
    env_path = os.environ.get('STACKRUN_STATE')
    if env_path:
        return Path(env_path)
    return Path.cwd() / '.states' / 'stackrun.json'


def lines_path(state_path: Path) -> Path:
    """Log-line file kept beside a state file."""
    return state_path.with_suffix('.lines.jsonl')


class Store:
    """Thread-safe in-memory store with optional JSON persistence.

    Every read and write takes the store lock; provisioners running on
    background threads share one store.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._lock = threading.RLock()
        self._sandboxes: dict[int, Sandbox] = {}
        self._releases: dict[int, Release] = {}
        self._executions: dict[int, Execution] = {}
        # (execution_id, stream) -> {line_number: line}
        self._lines: dict[tuple[int, str], dict[int, ExecutionLogLine]] = {}
        self._max_line: dict[tuple[int, str], int] = {}
        self._next_id = {'sandbox': 1, 'release': 1, 'execution': 1}

    def _allocate(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    # ─── Owners ──────────────────────────────────────────────────

    def create_sandbox(self, **attrs) -> Sandbox:
        with self._lock:
            sandbox = Sandbox(id=self._allocate('sandbox'), **attrs)
            if any(s.slug == sandbox.slug for s in self._sandboxes.values()):
                raise ValueError(f"Sandbox slug already taken: {sandbox.slug}")
            self._sandboxes[sandbox.id] = sandbox
            self._persist()
            return sandbox

    def create_release(self, **attrs) -> Release:
        with self._lock:
            release = Release(id=self._allocate('release'), **attrs)
            self._releases[release.id] = release
            self._persist()
            return release

    def update(self, owner: Owner, **changes) -> Owner:
        """Apply attribute changes to a sandbox or release and persist."""
        if 'env' in changes:
            validate_env(changes['env'])
        with self._lock:
            for key, value in changes.items():
                if not hasattr(owner, key):
                    raise AttributeError(f"{type(owner).__name__} has no attribute '{key}'")
                setattr(owner, key, value)
            if 'state' in changes and changes['state'] not in owner.STATES:
                raise ValueError(f"Invalid {type(owner).__name__.lower()} state: {changes['state']}")
            owner.updated_at = time.time()
            self._persist()
            return owner

    def find_sandbox(self, sandbox_id: int) -> Optional[Sandbox]:
        with self._lock:
            return self._sandboxes.get(sandbox_id)

    def find_sandbox_by_slug(self, slug: str) -> Optional[Sandbox]:
        with self._lock:
            for sandbox in self._sandboxes.values():
                if sandbox.slug == slug:
                    return sandbox
        return None

    def find_release(self, release_id: int) -> Optional[Release]:
        with self._lock:
            return self._releases.get(release_id)

    def find_owner(self, ref: OwnerRef) -> Optional[Owner]:
        if ref.kind == 'sandbox':
            return self.find_sandbox(ref.id)
        return self.find_release(ref.id)

    def sandboxes(self) -> list[Sandbox]:
        with self._lock:
            return sorted(self._sandboxes.values(), key=lambda s: s.id)

    def releases(self, environment: Optional[str] = None) -> list[Release]:
        with self._lock:
            found = [r for r in self._releases.values()
                     if environment is None or r.environment == environment]
        return sorted(found, key=lambda r: r.id)

    def latest_sandbox(self) -> Optional[Sandbox]:
        found = self.sandboxes()
        return found[-1] if found else None

    def latest_release(self, environment: Optional[str] = None) -> Optional[Release]:
        found = self.releases(environment)
        return found[-1] if found else None

    def delete_owner(self, owner: Owner) -> None:
        """Delete a sandbox or release along with its executions and log lines."""
        with self._lock:
            ref = owner.ref
            if ref.kind == 'sandbox':
                self._sandboxes.pop(ref.id, None)
            else:
                self._releases.pop(ref.id, None)
            doomed = [e.id for e in self._executions.values() if e.owner == ref]
            for execution_id in doomed:
                del self._executions[execution_id]
                for stream in STREAMS:
                    self._lines.pop((execution_id, stream), None)
                    self._max_line.pop((execution_id, stream), None)
            self._persist()
            if self.path is not None and doomed:
                self._write_lines(self.path)

    # ─── Executions ──────────────────────────────────────────────

    def create_execution(self, owner: OwnerRef, command: str, **attrs) -> Execution:
        with self._lock:
            execution = Execution(id=self._allocate('execution'), owner=owner, command=command, **attrs)
            self._executions[execution.id] = execution
            self._persist()
            return execution

    def update_execution(self, execution: Execution, **changes) -> Execution:
        with self._lock:
            for key, value in changes.items():
                setattr(execution, key, value)
            self._persist()
            return execution

    def find_execution(self, execution_id: int) -> Optional[Execution]:
        with self._lock:
            return self._executions.get(execution_id)

    def executions_for(self, owner: OwnerRef) -> list[Execution]:
        with self._lock:
            found = [e for e in self._executions.values() if e.owner == owner]
        return sorted(found, key=lambda e: e.id)

    # ─── Log lines ───────────────────────────────────────────────

    def max_line_number(self, execution_id: int, stream: str) -> int:
        """Highest line number for (execution, stream), 0 when none."""
        with self._lock:
            return self._max_line.get((execution_id, stream), 0)

    def _insert_line(self, line: ExecutionLogLine) -> bool:
        bucket_key = (line.execution_id, line.stream)
        bucket = self._lines.setdefault(bucket_key, {})
        if line.line_number in bucket:
            return False
        bucket[line.line_number] = line
        if line.line_number > self._max_line.get(bucket_key, 0):
            self._max_line[bucket_key] = line.line_number
        return True

    def append_log_line(self, execution_id: int, stream: str, line_number: int, content: str) -> bool:
        """Insert a log line, ignoring it if the key already exists.

        Returns:
            True if the line was inserted
        """
        line = ExecutionLogLine(execution_id, stream, line_number, content)
        with self._lock:
            if not self._insert_line(line):
                return False
            if self.path is not None:
                self._append_line_record(self.path, line)
            return True

    def log_lines(self, execution_id: int, stream: Optional[str] = None) -> list[ExecutionLogLine]:
        streams = STREAMS if stream is None else (stream,)
        with self._lock:
            found = [line for s in streams for line in self._lines.get((execution_id, s), {}).values()]
        return sorted(found, key=lambda line: (line.stream, line.line_number))

    def output(self, execution_id: int) -> str:
        return '\n'.join(line.content for line in self.log_lines(execution_id, 'output'))

    # ─── Persistence ─────────────────────────────────────────────

    def _persist(self) -> None:
        if self.path is not None:
            self._write_records(self.path)

    def _write_records(self, path: Path) -> None:
        with self._lock:
            data = {
                'next_id': dict(self._next_id),
                'sandboxes': [s.to_dict() for s in self._sandboxes.values()],
                'releases': [r.to_dict() for r in self._releases.values()],
                'executions': [e.to_dict() for e in self._executions.values()],
            }
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix('.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(path)

    def _append_line_record(self, path: Path, line: ExecutionLogLine) -> None:
        target = lines_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'a', encoding='utf-8') as f:
            f.write(json.dumps(line.to_dict()) + '\n')

    def _write_lines(self, path: Path) -> None:
        target = lines_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix('.tmp')
        with self._lock:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                for bucket in self._lines.values():
                    for line in bucket.values():
                        f.write(json.dumps(line.to_dict()) + '\n')
            tmp_path.replace(target)

    def save(self, path: Optional[Path] = None) -> Path:
        """Save all records and log lines.

        Returns:
            Path where state was saved
        """
        path = path or self.path or default_state_path()
        self._write_records(path)
        self._write_lines(path)
        logger.debug(f"Saved state to {path}")
        return path

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'Store':
        """Load a store from its JSON file, or return an empty one bound to path."""
        path = path or default_state_path()
        store = cls(path)
        if not path.exists():
            return store

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        store._next_id.update(data.get('next_id', {}))
        for item in data.get('sandboxes', []):
            sandbox = Sandbox.from_dict(item)
            store._sandboxes[sandbox.id] = sandbox
        for item in data.get('releases', []):
            release = Release.from_dict(item)
            store._releases[release.id] = release
        for item in data.get('executions', []):
            execution = Execution.from_dict(item)
            store._executions[execution.id] = execution

        line_file = lines_path(path)
        if line_file.exists():
            with open(line_file, encoding='utf-8') as f:
                for raw in f:
                    if raw.strip():
                        store._insert_line(ExecutionLogLine.from_dict(json.loads(raw)))

        logger.debug(f"Loaded state from {path}")
        return store
