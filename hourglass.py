#!/usr/bin/env python3
# hourglass: terminal task tracker with a live mirror of the repo's open GitHub issues
#
# Hotkeys (Tasks tab)
#   a  add a task
#   u  update the selected task
#   d  toggle done on the selected task
#   x  remove the selected task
#   j/k, Down/Up  move selection (wraps around)
#   ]/[  switch between the Tasks and Issues tabs
#   q  quit
#
# While typing (add/update)
#   Enter commits, Esc discards, Backspace deletes the last character.
#
# Config (optional, --config PATH)
#   repo: owner/name          # skip `git remote -v` discovery
#   refresh_interval: 30      # seconds between background issue refreshes
#   tick_ms: 250              # UI poll budget
#   task_file: tasks.hourglass
#   time_format: "%b %d, %Y %I:%M %p"
#
# Environment
# - GITHUB_ACCESS_TOKEN or GITHUB_TOKEN (read access to the repo's issues)

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import datetime as dt
import enum
import json
import logging
import os
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
from prompt_toolkit.widgets import Frame

logger = logging.getLogger('hourglass')

HOURGLASS_EXTENSION = ".hourglass"
DEFAULT_TASK_FILE = "tasks.hourglass"
TIME_FORMAT = "%b %d, %Y %I:%M %p"
DEFAULT_REFRESH_INTERVAL = 30  # seconds
DEFAULT_TICK_MS = 250
GITHUB_API = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"


# -----------------------------
# Errors
# -----------------------------
class HourglassError(Exception):
    """Base class for every error raised by hourglass."""


class StorageError(HourglassError):
    """The task file exists but cannot be read or parsed (fatal at startup)."""


class TaskNotFound(HourglassError, LookupError):
    def __init__(self, index: int):
        super().__init__(f"No task at index {index}")
        self.index = index


class IssueFetchError(HourglassError):
    """Any failure of the remote issue fetch: no remote, network, auth or payload."""


class ConfigError(HourglassError, ValueError):
    pass


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    repo: Optional[str] = None          # "owner/name"; None => discover from git remote
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    tick_ms: int = DEFAULT_TICK_MS
    task_file: Optional[str] = None
    time_format: str = TIME_FORMAT


_REPO_RE = re.compile(r"^[^/\s]+/[^/\s]+$")


def _positive_int(raw: dict, key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"Config: '{key}' must be an integer, got {value!r}.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Config: '{key}' must be an integer, got {value!r}.")
    if number <= 0:
        raise ConfigError(f"Config: '{key}' must be positive.")
    return number


def load_config(path: Optional[str]) -> Config:
    """Read the optional YAML config; no path means defaults."""
    if not path:
        return Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Config: unable to read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config: invalid YAML in {path}: {e}") from e
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config: top level must be a mapping.")
    repo = raw.get("repo") or None
    if repo is not None:
        repo = str(repo).strip()
        if not _REPO_RE.match(repo):
            raise ConfigError(f"Config: 'repo' must look like owner/name, got {repo!r}.")
    task_file = raw.get("task_file") or None
    return Config(
        repo=repo,
        refresh_interval=_positive_int(raw, "refresh_interval", DEFAULT_REFRESH_INTERVAL),
        tick_ms=_positive_int(raw, "tick_ms", DEFAULT_TICK_MS),
        task_file=str(task_file) if task_file else None,
        time_format=str(raw.get("time_format") or TIME_FORMAT),
    )


# -----------------------------
# Time helpers
# -----------------------------
def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_timestamp(value: str) -> dt.datetime:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str):
        raise ValueError(f"Expected a timestamp string, got {value!r}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


_AGE_UNITS = (
    ("y", 60 * 60 * 24 * 365),
    ("mo", 60 * 60 * 24 * 30),
    ("w", 60 * 60 * 24 * 7),
    ("d", 60 * 60 * 24),
    ("h", 60 * 60),
    ("min", 60),
)


def format_age(from_dt: dt.datetime, to_dt: dt.datetime) -> str:
    sec = max(0, int((to_dt - from_dt).total_seconds()))
    for unit, size in _AGE_UNITS:
        if sec >= size:
            return f"{sec // size}{unit}"
    return f"{sec}s"


def to_local(ts: dt.datetime, time_format: str = TIME_FORMAT) -> str:
    return ts.astimezone().strftime(time_format)


# -----------------------------
# Models
# -----------------------------
@dataclass
class Task:
    id: int
    description: str
    completed: bool = False
    created_at: dt.datetime = field(default_factory=utc_now)
    modified_at: dt.datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "completed": self.completed,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Task":
        if not isinstance(data, dict):
            raise TypeError(f"Task record must be an object, got {type(data).__name__}")
        task_id = data["id"]
        if isinstance(task_id, bool) or not isinstance(task_id, int):
            raise TypeError(f"Task id must be an integer, got {task_id!r}")
        completed = data["completed"]
        if not isinstance(completed, bool):
            raise TypeError(f"Task completed must be true or false, got {completed!r}")
        return cls(
            id=task_id,
            description=str(data["description"]),
            completed=completed,
            created_at=parse_timestamp(data["created_at"]),
            modified_at=parse_timestamp(data["modified_at"]),
        )


@dataclass(frozen=True)
class IssueAuthor:
    login: str
    id: int


@dataclass(frozen=True)
class Issue:
    id: int
    number: int
    title: str
    body: Optional[str]
    created_at: dt.datetime
    updated_at: dt.datetime
    author: IssueAuthor
    html_url: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, object]) -> "Issue":
        user = data["user"] or {}
        return cls(
            id=int(data["id"]),
            number=int(data["number"]),
            title=str(data["title"]),
            body=data.get("body"),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            author=IssueAuthor(login=str(user["login"]), id=int(user["id"])),
            html_url=str(data.get("html_url") or ""),
        )


# -----------------------------
# Storage
# -----------------------------
def find_task_file(directory: Path) -> Path:
    """Use an existing *.hourglass file in ``directory`` if there is one."""
    existing = sorted(p for p in directory.glob(f"*{HOURGLASS_EXTENSION}") if p.is_file())
    if existing:
        return existing[0]
    return directory / DEFAULT_TASK_FILE


class TaskStore:
    """In-memory task list plus the last fetched issues; every task mutation is flushed to disk."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        self.tasks: List[Task] = []
        self.issues: List[Issue] = []
        self._next_id = 1

    def load(self) -> List[Task]:
        if not self.path.exists():
            logger.info("No task file at %s; creating an empty one", self.path)
            self.tasks = []
            self.save()
            return []
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Unable to read {self.path}: {e}") from e
        tasks: List[Task] = []
        if content.strip():
            try:
                raw = json.loads(content)
            except json.JSONDecodeError as e:
                raise StorageError(f"{self.path} is not valid JSON: {e}") from e
            if not isinstance(raw, list):
                raise StorageError(f"{self.path} must hold a JSON array of tasks")
            try:
                tasks = [Task.from_dict(item) for item in raw]
            except (KeyError, TypeError, ValueError) as e:
                raise StorageError(f"{self.path} holds a malformed task: {e}") from e
        ids = [t.id for t in tasks]
        if len(set(ids)) != len(ids):
            raise StorageError(f"{self.path} holds duplicate task ids")
        self.tasks = tasks
        self._next_id = max(ids, default=0) + 1
        logger.info("Loaded %d tasks from %s", len(tasks), self.path)
        return list(tasks)

    def save(self) -> None:
        data = [t.to_dict() for t in self.tasks]
        try:
            directory = self.path.parent
            if not directory.is_dir():
                directory.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.exception("Unable to write %s", self.path)
            raise StorageError(f"Unable to write {self.path}: {e}") from e

    def _in_range(self, index: Optional[int]) -> bool:
        return index is not None and 0 <= index < len(self.tasks)

    def add(self, description: str) -> Task:
        # never hand out an id again within a session, even after removals
        next_id = max(max((t.id for t in self.tasks), default=0) + 1, self._next_id)
        self._next_id = next_id + 1
        now = utc_now()
        task = Task(id=next_id, description=description, created_at=now, modified_at=now)
        self.tasks.append(task)
        self.save()
        logger.debug("Added task %d", task.id)
        return task

    def update(self, index: int, description: str) -> Task:
        if not self._in_range(index):
            raise TaskNotFound(index)
        task = self.tasks[index]
        task.description = description
        task.modified_at = utc_now()
        self.save()
        return task

    def toggle(self, index: int) -> None:
        if not self._in_range(index):
            logger.debug("toggle: index %s out of range", index)
            return
        task = self.tasks[index]
        task.completed = not task.completed
        task.modified_at = utc_now()
        self.save()

    def remove(self, index: int) -> Task:
        if not self._in_range(index):
            raise TaskNotFound(index)
        task = self.tasks.pop(index)
        self.save()
        logger.debug("Removed task %d", task.id)
        return task


# -----------------------------
# Issue cache
# -----------------------------
ISSUES_CACHE_KEY = "issues"


class IssueCache:
    """Single-slot, lock-guarded memo of the last successful issue fetch."""

    def __init__(self):
        self._lock = threading.Lock()
        self._slot: Dict[str, List[Issue]] = {}

    def get(self) -> Optional[List[Issue]]:
        with self._lock:
            issues = self._slot.get(ISSUES_CACHE_KEY)
            return list(issues) if issues is not None else None

    def put(self, issues: List[Issue]) -> None:
        with self._lock:
            self._slot[ISSUES_CACHE_KEY] = list(issues)

    def invalidate(self) -> None:
        with self._lock:
            self._slot.pop(ISSUES_CACHE_KEY, None)


# -----------------------------
# GitHub issues
# -----------------------------
_REMOTE_LINE_RE = re.compile(r"^(\S+)\s+(\S+)\s+\((fetch|push)\)$")
_SCP_URL_RE = re.compile(r"^[\w.-]+@([\w.-]+):(.+)$")


def parse_remote_url(url: str) -> Tuple[str, str]:
    """Return (owner, name) for https, ssh:// and scp-like git@host:owner/name remotes."""
    m = _SCP_URL_RE.match(url)
    if m:
        path = m.group(2)
    else:
        m = re.match(r"^[a-z+]+://[^/]+/(.+)$", url)
        if not m:
            raise IssueFetchError(f"Unable to parse git remote url: {url}")
        path = m.group(1)
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2:
        raise IssueFetchError(f"Unable to get owner/name of repo from: {url}")
    owner, name = parts[0], parts[1]
    if name.endswith(".git"):
        name = name[:-4]
    return owner, name


def discover_repo(cwd: Optional[str] = None) -> Tuple[str, str]:
    """Find (owner, name) from the first fetch remote of the git repo in ``cwd``."""
    try:
        proc = subprocess.run(
            ["git", "remote", "-v"], cwd=cwd, capture_output=True, text=True, timeout=10, check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise IssueFetchError(f"Failed to get git remotes: {e}") from e
    for line in proc.stdout.splitlines():
        m = _REMOTE_LINE_RE.match(line.strip())
        if m and m.group(3) == "fetch":
            return parse_remote_url(m.group(2))
    raise IssueFetchError("No git fetch remote configured")


def load_dotenv_token() -> Optional[str]:
    """Load GITHUB_ACCESS_TOKEN / GITHUB_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
            continue
        for line in lines:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            k, v = line.split('=', 1)
            k = k.strip()
            v = v.strip().strip('"').strip("'")
            if k in ("GITHUB_ACCESS_TOKEN", "GITHUB_TOKEN") and v:
                os.environ.setdefault(k, v)
                return v
    return None


def resolve_token() -> Optional[str]:
    return os.environ.get("GITHUB_ACCESS_TOKEN") or os.environ.get("GITHUB_TOKEN") or load_dotenv_token()


def _session(token: str, owner: str = "hourglass") -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    s.headers["X-GitHub-Api-Version"] = GITHUB_API_VERSION
    s.headers["User-Agent"] = owner
    return s


def fetch_issues(
    token: Optional[str],
    owner: str,
    name: str,
    session: Optional[requests.Session] = None,
    timeout: float = 20,
) -> List[Issue]:
    """Fetch the open issues of owner/name; pull requests are skipped."""
    if not token:
        raise IssueFetchError("GITHUB_ACCESS_TOKEN is not set")
    s = session or _session(token, owner)
    url = f"{GITHUB_API}/repos/{owner}/{name}/issues"
    try:
        r = s.get(url, params={"state": "open", "per_page": 100}, timeout=timeout)
        r.raise_for_status()
        data = r.json()
    except requests.exceptions.RequestException as e:
        raise IssueFetchError(f"Unable to get issues for {owner}/{name}: {e}") from e
    except ValueError as e:
        raise IssueFetchError(f"Unable to parse issues response: {e}") from e
    if not isinstance(data, list):
        raise IssueFetchError("Unexpected issues payload (expected a JSON array)")
    issues: List[Issue] = []
    for item in data:
        if not isinstance(item, dict):
            raise IssueFetchError("Unexpected issue record in payload")
        if item.get("pull_request"):
            continue
        try:
            issues.append(Issue.from_api(item))
        except (KeyError, TypeError, ValueError) as e:
            raise IssueFetchError(f"Malformed issue record: {e}") from e
    return issues


class GitHubIssueSource:
    """The fetch collaborator: resolves repo and token at call time, returns issues or raises IssueFetchError."""

    def __init__(self, repo: Optional[str] = None, token: Optional[str] = None, cwd: Optional[str] = None):
        self.repo = repo
        self.token = token
        self.cwd = cwd

    def __call__(self) -> List[Issue]:
        if self.repo:
            owner, name = self.repo.split("/", 1)
        else:
            owner, name = discover_repo(self.cwd)
        return fetch_issues(self.token or resolve_token(), owner, name)


class IssueRefresher:
    """Refetches issues into the cache: invalidate first, put only on success."""

    def __init__(self, cache: IssueCache, fetch: Callable[[], List[Issue]]):
        self.cache = cache
        self.fetch = fetch
        self._lock = threading.Lock()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def refresh(self) -> List[Issue]:
        with self._lock:
            if self._in_flight:
                logger.debug("Issue refresh already in flight; skipping")
                return self.cache.get() or []
            self._in_flight = True
        try:
            self.cache.invalidate()
            try:
                issues = self.fetch()
            except IssueFetchError as e:
                logger.warning("Issue refresh failed: %s", e)
                return []
            except Exception:
                logger.exception("Issue refresh failed")
                return []
            self.cache.put(issues)
            logger.info("Refreshed %d issues", len(issues))
            return list(issues)
        finally:
            with self._lock:
                self._in_flight = False

    def current(self) -> List[Issue]:
        """Cached issues, fetching synchronously when the slot is empty."""
        cached = self.cache.get()
        if cached is not None:
            return cached
        return self.refresh()


# -----------------------------
# Scheduler
# -----------------------------
class JobKind(enum.Enum):
    REFRESH_ISSUES = "refresh_issues"


def seconds(n: float) -> dt.timedelta:
    return dt.timedelta(seconds=n)


def minutes(n: float) -> dt.timedelta:
    return dt.timedelta(minutes=n)


def hours(n: float) -> dt.timedelta:
    return dt.timedelta(hours=n)


@dataclass
class Job:
    kind: JobKind
    interval: Optional[dt.timedelta] = None
    last_fire: Optional[float] = None

    @property
    def scheduled(self) -> bool:
        return self.interval is not None


class JobHandle:
    def __init__(self, job: Job):
        self._job = job

    @property
    def kind(self) -> JobKind:
        return self._job.kind

    @property
    def scheduled(self) -> bool:
        return self._job.scheduled

    def every(self, interval: dt.timedelta) -> "JobHandle":
        if interval.total_seconds() <= 0:
            raise ValueError("Job interval must be positive")
        self._job.interval = interval
        return self


class Scheduler:
    """Cooperative periodic runner; nothing happens between explicit tick() calls.

    A scheduled job's first tick only records the baseline. After that a job
    fires at most once per tick, once ``interval`` has elapsed since it last
    fired. Exceptions raised by ``dispatch`` propagate to the caller.
    """

    def __init__(self, dispatch: Callable[[JobKind], None]):
        self._dispatch = dispatch
        self._jobs: List[Job] = []

    @property
    def jobs(self) -> Tuple[Job, ...]:
        return tuple(self._jobs)

    def register(self, kind: JobKind) -> JobHandle:
        job = Job(kind=kind)
        self._jobs.append(job)
        return JobHandle(job)

    def tick(self, now: float) -> List[JobKind]:
        fired: List[JobKind] = []
        for job in self._jobs:
            if job.interval is None:
                continue
            if job.last_fire is None:
                job.last_fire = now
                continue
            if now - job.last_fire >= job.interval.total_seconds():
                self._dispatch(job.kind)
                job.last_fire = now
                fired.append(job.kind)
        return fired


# -----------------------------
# Interaction state machine
# -----------------------------
class View(enum.Enum):
    TASK = "tasks"
    ISSUE = "issues"


class Sub(enum.Enum):
    VIEWING = "viewing"
    ADDING = "adding"
    UPDATING = "updating"


TABS: Tuple[View, ...] = (View.TASK, View.ISSUE)


@dataclass(frozen=True)
class Mode:
    view: View
    sub: Sub = Sub.VIEWING

    @property
    def is_viewing(self) -> bool:
        return self.sub is Sub.VIEWING


TASK_VIEWING = Mode(View.TASK, Sub.VIEWING)


class KeyKind(enum.Enum):
    CHAR = "char"
    ENTER = "enter"
    BACKSPACE = "backspace"
    ESC = "esc"
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class Key:
    kind: KeyKind
    char: str = ""

    @classmethod
    def of(cls, char: str) -> "Key":
        return cls(KeyKind.CHAR, char)


class Action(enum.Enum):
    NONE = "none"
    QUIT = "quit"
    NEXT = "next"
    PREVIOUS = "previous"
    NEXT_TAB = "next_tab"
    PREVIOUS_TAB = "previous_tab"
    START_ADD = "start_add"
    START_UPDATE = "start_update"
    TOGGLE = "toggle"
    REMOVE = "remove"
    INSERT_CHAR = "insert_char"
    BACKSPACE = "backspace"
    COMMIT = "commit"
    CANCEL = "cancel"


_TASK_VIEW_CHARS: Dict[str, Action] = {
    'q': Action.QUIT,
    'j': Action.NEXT,
    'k': Action.PREVIOUS,
    'd': Action.TOGGLE,
    'a': Action.START_ADD,
    'u': Action.START_UPDATE,
    'x': Action.REMOVE,
    ']': Action.NEXT_TAB,
    '[': Action.PREVIOUS_TAB,
}
_ISSUE_VIEW_CHARS: Dict[str, Action] = {
    'q': Action.QUIT,
    'j': Action.NEXT,
    'k': Action.PREVIOUS,
    ']': Action.NEXT_TAB,
    '[': Action.PREVIOUS_TAB,
}
_NAV_KEYS: Dict[KeyKind, Action] = {KeyKind.DOWN: Action.NEXT, KeyKind.UP: Action.PREVIOUS}
_ENTRY_KEYS: Dict[KeyKind, Action] = {
    KeyKind.ENTER: Action.COMMIT,
    KeyKind.BACKSPACE: Action.BACKSPACE,
    KeyKind.ESC: Action.CANCEL,
}


def resolve_action(mode: Mode, key: Key) -> Action:
    """Map a key to an action for the given mode; unknown keys map to NONE."""
    if mode.is_viewing:
        if key.kind is KeyKind.CHAR:
            table = _TASK_VIEW_CHARS if mode.view is View.TASK else _ISSUE_VIEW_CHARS
            return table.get(key.char, Action.NONE)
        return _NAV_KEYS.get(key.kind, Action.NONE)
    if key.kind is KeyKind.CHAR:
        if len(key.char) == 1 and key.char.isprintable():
            return Action.INSERT_CHAR
        return Action.NONE
    return _ENTRY_KEYS.get(key.kind, Action.NONE)


@dataclass(frozen=True)
class Snapshot:
    """Read-only view of the interaction state handed to rendering each frame."""
    mode: Mode
    tasks: Tuple[Task, ...]
    issues: Tuple[Issue, ...]
    cursor: Optional[int]
    buffer: str
    should_quit: bool = False

    @property
    def tab_index(self) -> int:
        return TABS.index(self.mode.view)

    @property
    def selected_task(self) -> Optional[Task]:
        if self.mode.view is View.TASK and self.cursor is not None and self.cursor < len(self.tasks):
            return self.tasks[self.cursor]
        return None

    @property
    def selected_issue(self) -> Optional[Issue]:
        if self.mode.view is View.ISSUE and self.cursor is not None and self.cursor < len(self.issues):
            return self.issues[self.cursor]
        return None


class Interaction:
    """Active tab and text-entry sub-mode, text buffer and selection cursor."""

    def __init__(self, store: TaskStore, refresher: IssueRefresher):
        self.store = store
        self.refresher = refresher
        self.mode = TASK_VIEWING
        self.buffer = ""
        self.cursor: Optional[int] = None
        self.should_quit = False
        self._clamp_cursor()

    def _active_len(self) -> int:
        if self.mode.view is View.TASK:
            return len(self.store.tasks)
        return len(self.store.issues)

    def _clamp_cursor(self) -> None:
        n = self._active_len()
        if n == 0:
            self.cursor = None
        elif self.cursor is None:
            self.cursor = 0
        else:
            self.cursor = max(0, min(self.cursor, n - 1))

    def handle(self, key: Key) -> Action:
        action = resolve_action(self.mode, key)
        self.apply(action, key)
        return action

    def apply(self, action: Action, key: Optional[Key] = None) -> None:
        if action is Action.NONE:
            return
        if action is Action.QUIT:
            self.should_quit = True
        elif action is Action.NEXT:
            self.next()
        elif action is Action.PREVIOUS:
            self.previous()
        elif action is Action.NEXT_TAB:
            self.switch_tab(1)
        elif action is Action.PREVIOUS_TAB:
            self.switch_tab(-1)
        elif action is Action.START_ADD:
            self.buffer = ""
            self.mode = Mode(View.TASK, Sub.ADDING)
        elif action is Action.START_UPDATE:
            self.start_update()
        elif action is Action.TOGGLE:
            if self.cursor is not None:
                self.store.toggle(self.cursor)
        elif action is Action.REMOVE:
            self.remove_selected()
        elif action is Action.INSERT_CHAR:
            if key is not None:
                self.buffer += key.char
        elif action is Action.BACKSPACE:
            self.buffer = self.buffer[:-1]
        elif action is Action.COMMIT:
            self.commit()
        elif action is Action.CANCEL:
            self.buffer = ""
            self.mode = TASK_VIEWING

    def next(self) -> None:
        if self.cursor is None:
            return
        n = self._active_len()
        self.cursor = 0 if self.cursor >= n - 1 else self.cursor + 1

    def previous(self) -> None:
        if self.cursor is None:
            return
        n = self._active_len()
        self.cursor = n - 1 if self.cursor == 0 else self.cursor - 1

    def switch_tab(self, step: int) -> None:
        index = (TABS.index(self.mode.view) + step) % len(TABS)
        view = TABS[index]
        self.mode = Mode(view, Sub.VIEWING)
        if view is View.ISSUE:
            self.store.issues = self.refresher.current()
        self.cursor = None
        self._clamp_cursor()

    def start_update(self) -> None:
        if self.cursor is None:
            return
        self.buffer = self.store.tasks[self.cursor].description
        self.mode = Mode(View.TASK, Sub.UPDATING)

    def remove_selected(self) -> None:
        if self.cursor is None:
            return
        try:
            self.store.remove(self.cursor)
        except TaskNotFound as e:
            logger.debug("remove ignored: %s", e)
        self._clamp_cursor()

    def commit(self) -> None:
        if self.mode.sub is Sub.ADDING:
            self.store.add(self.buffer)
        elif self.mode.sub is Sub.UPDATING:
            try:
                self.store.update(self.cursor, self.buffer)
            except TaskNotFound as e:
                logger.debug("update ignored: %s", e)
        self.buffer = ""
        self.mode = TASK_VIEWING
        self._clamp_cursor()

    def sync_issues(self) -> None:
        """Pick up a background refresh while the issue tab is showing."""
        if self.mode.view is not View.ISSUE:
            return
        self.store.issues = self.refresher.cache.get() or []
        self._clamp_cursor()

    def snapshot(self) -> Snapshot:
        return Snapshot(
            mode=self.mode,
            tasks=tuple(dataclasses.replace(t) for t in self.store.tasks),
            issues=tuple(self.store.issues),
            cursor=self.cursor,
            buffer=self.buffer,
            should_quit=self.should_quit,
        )


# -----------------------------
# Event loop
# -----------------------------
Poll = Callable[[float], Optional[Key]]
AsyncPoll = Callable[[float], Awaitable[Optional[Key]]]
Render = Callable[[Snapshot], None]


class EventLoop:
    """Ticks the scheduler, waits for input within the tick budget, dispatches it, stops on quit."""

    def __init__(
        self,
        interaction: Interaction,
        refresh_interval: dt.timedelta = seconds(DEFAULT_REFRESH_INTERVAL),
        tick_rate: float = DEFAULT_TICK_MS / 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interaction = interaction
        self.tick_rate = tick_rate
        self.clock = clock
        self.scheduler = Scheduler(self.run_job)
        self.scheduler.register(JobKind.REFRESH_ISSUES).every(refresh_interval)
        self._last_tick = clock()

    def run_job(self, kind: JobKind) -> None:
        if kind is JobKind.REFRESH_ISSUES:
            # refreshes even while the task tab is showing
            self.interaction.refresher.refresh()
            self.interaction.sync_issues()

    def _begin(self) -> float:
        self.scheduler.tick(self.clock())
        elapsed = self.clock() - self._last_tick
        return max(0.0, self.tick_rate - elapsed)

    def _finish(self, key: Optional[Key]) -> bool:
        if key is not None:
            self.interaction.handle(key)
        if self.interaction.should_quit:
            return False
        if self.clock() - self._last_tick >= self.tick_rate:
            self._last_tick = self.clock()
        return True

    def step(self, poll: Poll) -> bool:
        """Run one iteration; False once the quit flag is set."""
        timeout = self._begin()
        return self._finish(poll(timeout))

    def run(self, poll: Poll, render: Optional[Render] = None) -> None:
        while True:
            if render is not None:
                render(self.interaction.snapshot())
            if not self.step(poll):
                return

    async def run_async(self, poll: AsyncPoll, render: Optional[Render] = None) -> None:
        while True:
            if render is not None:
                render(self.interaction.snapshot())
            timeout = self._begin()
            key = await poll(timeout)
            if not self._finish(key):
                return


def build_event_loop(store: TaskStore, fetch: Callable[[], List[Issue]], cfg: Config) -> EventLoop:
    refresher = IssueRefresher(IssueCache(), fetch)
    interaction = Interaction(store, refresher)
    return EventLoop(
        interaction,
        refresh_interval=seconds(cfg.refresh_interval),
        tick_rate=cfg.tick_ms / 1000.0,
    )


# -----------------------------
# Rendering
# -----------------------------
BASE_STYLE: Dict[str, str] = {
    'tab': '#87d7ff',
    'tab.active': 'bold reverse #ffd75f',
    'table.header': 'bold #ffd75f',
    'table.cursor': 'bold #ffffff bg:#444444',
    'table.done': '#87ff5f',
    'table.issue.number': 'bold #ff8787',
    'detail.name': '#ffd787',
    'detail.value': '#f0f0f0',
    'command': '#ffffff bg:#303030',
    'hint': 'ansigray',
}


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Truncate to a display width, ending with an ellipsis when cut."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if get_cwidth(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = get_cwidth(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int) -> str:
    raw = _truncate(_sanitize_cell_text(text), width)
    return raw + " " * max(0, width - get_cwidth(raw))


def build_tab_fragments(snap: Snapshot) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for i, view in enumerate(TABS):
        if i:
            frags.append(("", " | "))
        style = 'class:tab.active' if view is snap.mode.view else 'class:tab'
        frags.append((style, f" {view.value.capitalize()} "))
    frags.append(("class:hint", "   [/] switch tab  q quit"))
    return frags


def build_table_fragments(snap: Snapshot, now: Optional[dt.datetime] = None) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the active list."""
    now = now or utc_now()
    frags: List[Tuple[str, str]] = []
    if snap.mode.view is View.TASK:
        if not snap.tasks:
            return [("bold", "No tasks yet."), ("", " Press "), ("bold", "a"), ("", " to add one.")]
        frags.append(("class:table.header", f"  {'ID':<5} {'':3} {_pad_display('Description', 50)} Age"))
        for i, t in enumerate(snap.tasks):
            frags.append(("", "\n"))
            style = 'class:table.cursor' if i == snap.cursor else ('class:table.done' if t.completed else '')
            mark = "[x]" if t.completed else "[ ]"
            marker = "> " if i == snap.cursor else "  "
            frags.append((style, f"{marker}{t.id:<5} {mark} {_pad_display(t.description, 50)} {format_age(t.created_at, now)}"))
        return frags
    if not snap.issues:
        return [("bold", "No issues."), ("", " Nothing fetched, or the fetch failed (see log).")]
    frags.append(("class:table.header", f"  {'#':<6} {_pad_display('Title', 54)} Age"))
    for i, issue in enumerate(snap.issues):
        frags.append(("", "\n"))
        marker = "> " if i == snap.cursor else "  "
        if i == snap.cursor:
            frags.append(('class:table.cursor', f"{marker}{'#' + str(issue.number):<6} {_pad_display(issue.title, 54)} {format_age(issue.created_at, now)}"))
            continue
        frags.append(("", marker))
        frags.append(('class:table.issue.number', f"{'#' + str(issue.number):<6}"))
        frags.append(("", f" {_pad_display(issue.title, 54)} {format_age(issue.created_at, now)}"))
    return frags


def detail_fields(snap: Snapshot, time_format: str = TIME_FORMAT, now: Optional[dt.datetime] = None) -> List[Tuple[str, str]]:
    now = now or utc_now()
    task = snap.selected_task
    if task is not None:
        return [
            ("ID", str(task.id)),
            ("Description", task.description),
            ("Status", "done" if task.completed else "open"),
            ("Age", format_age(task.created_at, now)),
            ("Created at", to_local(task.created_at, time_format)),
            ("Modified at", to_local(task.modified_at, time_format)),
        ]
    issue = snap.selected_issue
    if issue is not None:
        return [
            ("Number", f"#{issue.number}"),
            ("Author", issue.author.login),
            ("Title", issue.title),
            ("Body", _truncate(issue.body or "", 200)),
            ("Created at", to_local(issue.created_at, time_format)),
            ("Modified at", to_local(issue.updated_at, time_format)),
            ("Link", issue.html_url),
        ]
    return []


def build_detail_fragments(snap: Snapshot, time_format: str = TIME_FORMAT) -> List[Tuple[str, str]]:
    fields = detail_fields(snap, time_format)
    if not fields:
        return [("class:hint", "Nothing selected.")]
    width = max(len(name) for name, _ in fields) + 2
    frags: List[Tuple[str, str]] = []
    for name, value in fields:
        if frags:
            frags.append(("", "\n"))
        frags.append(("class:detail.name", f"{name}:".ljust(width)))
        frags.append(("class:detail.value", value))
    return frags


def command_title(snap: Snapshot) -> str:
    if snap.mode.sub is Sub.ADDING:
        return "Command - Add task"
    if snap.mode.sub is Sub.UPDATING:
        return "Command - Update task"
    return "Command"


def build_command_fragments(snap: Snapshot) -> List[Tuple[str, str]]:
    if snap.mode.is_viewing:
        if snap.mode.view is View.TASK:
            return [("class:hint", "a add  u update  d done  x remove  j/k move")]
        return [("class:hint", "j/k move")]
    return [("class:command", snap.buffer), ("[SetCursorPosition]", ""), ("class:command", " ")]


# -----------------------------
# TUI
# -----------------------------
def run_ui(loop: EventLoop, cfg: Config) -> None:
    """Full-screen prompt_toolkit front end; the event loop runs as a background task."""
    keys: "asyncio.Queue[Key]" = asyncio.Queue()
    state: Dict[str, Snapshot] = {'snap': loop.interaction.snapshot()}

    kb = KeyBindings()

    @kb.add(Keys.Any)
    def _(event):
        keys.put_nowait(Key.of(event.data))

    @kb.add(Keys.BracketedPaste)
    def _(event):
        for ch in event.data:
            keys.put_nowait(Key.of(ch))

    @kb.add('enter')
    def _(event):
        keys.put_nowait(Key(KeyKind.ENTER))

    @kb.add('backspace')
    def _(event):
        keys.put_nowait(Key(KeyKind.BACKSPACE))

    @kb.add('escape')
    def _(event):
        keys.put_nowait(Key(KeyKind.ESC))

    @kb.add('up')
    def _(event):
        keys.put_nowait(Key(KeyKind.UP))

    @kb.add('down')
    def _(event):
        keys.put_nowait(Key(KeyKind.DOWN))

    container = HSplit([
        Window(height=1, content=FormattedTextControl(lambda: build_tab_fragments(state['snap']))),
        Frame(
            body=Window(content=FormattedTextControl(lambda: build_table_fragments(state['snap'])), wrap_lines=False),
            title=lambda: TABS[state['snap'].tab_index].value.capitalize(),
        ),
        Frame(
            body=Window(
                height=Dimension(min=3, preferred=8, max=10),
                content=FormattedTextControl(lambda: build_detail_fragments(state['snap'], cfg.time_format)),
                wrap_lines=True,
            ),
            title="Details",
        ),
        Frame(
            body=Window(height=1, content=FormattedTextControl(lambda: build_command_fragments(state['snap']), show_cursor=True)),
            title=lambda: command_title(state['snap']),
        ),
    ])
    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=Style.from_dict(BASE_STYLE))

    def render(snap: Snapshot) -> None:
        state['snap'] = snap
        app.invalidate()

    async def poll(timeout: float) -> Optional[Key]:
        try:
            return keys.get_nowait()
        except asyncio.QueueEmpty:
            pass
        try:
            return await asyncio.wait_for(keys.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def _drive():
        try:
            await loop.run_async(poll, render)
        except Exception as exc:
            logger.exception("Event loop crashed")
            app.exit(exception=exc)
            return
        app.exit()

    app.run(pre_run=lambda: app.create_background_task(_drive()))


# -----------------------------
# Logging / CLI
# -----------------------------
def setup_logging(log_level: str, log_path: os.PathLike) -> logging.Logger:
    """File logger only; the terminal belongs to the UI. Handler level follows --log-level."""
    log = logging.getLogger('hourglass')
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    log.addHandler(fh)
    return log


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Terminal task tracker with the repo's open GitHub issues")
    ap.add_argument("--file", help="Path to the task file (default: *.hourglass in the current dir)")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-ui", action="store_true", help="Print a task summary and exit")
    ap.add_argument("--issues", action="store_true", help="Fetch and print open issues, then exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    path = Path(args.file or cfg.task_file or find_task_file(Path.cwd()))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"Failed to load tasks: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(args.log_level, path.resolve().parent / 'hourglass.log')

    store = TaskStore(path)
    try:
        store.load()
    except StorageError as e:
        print(f"Failed to load tasks: {e}", file=sys.stderr)
        sys.exit(2)

    source = GitHubIssueSource(repo=cfg.repo)

    if args.issues:
        try:
            issues = source()
        except IssueFetchError as e:
            print(f"Unable to fetch issues: {e}", file=sys.stderr)
            sys.exit(1)
        now = utc_now()
        for issue in issues:
            print(f"#{issue.number:<6} {issue.title}  ({issue.author.login}, {format_age(issue.created_at, now)})")
        print(f"Issues: {len(issues)}")
        return

    if args.no_ui:
        done_ct = sum(1 for t in store.tasks if t.completed)
        print(f"Tasks: {len(store.tasks)} (done {done_ct})")
        for t in store.tasks:
            print(f"  {t.id:>4} [{'x' if t.completed else ' '}] {t.description}")
        return

    run_ui(build_event_loop(store, source, cfg), cfg)


if __name__ == "__main__":
    main()
