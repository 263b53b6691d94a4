#!/usr/bin/env python3
"""winmaint — audit, diff and apply maintenance on a Windows host.

Every run gets its own session directory.  The inventory phase audits each
maintenance domain read-only, the reconciliation phase applies only the
computed delta behind a system restore point, and the reporting phase turns
the session log into an HTML report.
"""

import argparse
import copy
import ctypes
import fnmatch
import html
import json
import os
import re
import secrets
import shutil
import signal
import string
import subprocess
import sys
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# ── Constants ────────────────────────────────────────────────────────────────

SESSION_CATEGORIES = ("data", "logs", "reports", "temp", "inventory")

LEVELS = ("DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "FATAL")

UNIT_COMPONENTS = ("BLOATWARE", "TELEMETRY", "SYSTEM_OPTIMIZATION")

LOG_COMPONENTS = (
    "ORCHESTRATOR", "SESSION", "LOGGER", "CONFIG", "RESTORE",
    "DIFF", "LOG_PROCESSOR", "REPORT",
) + UNIT_COMPONENTS

PHASES = ("inventory", "reconciliation", "reporting")

DEFAULT_BASE_DIR = Path(os.environ.get("TEMP", "/tmp")) / "winmaint"
DEFAULT_MIN_RESTORE_GB = 10
DEFAULT_UNIT_TIMEOUT = 600
DEFAULT_CANCEL_GRACE = 30
DEFAULT_SYSTEM_DRIVE = os.environ.get("SystemDrive", "C:")

EXIT_OK = 0
EXIT_UNIT_FAILED = 1
EXIT_FATAL = 2

GB = 1024 ** 3

DEFAULT_CONFIG = {
    "bloatware": {
        "deny": [
            "Microsoft.BingNews", "Microsoft.BingWeather", "Microsoft.GetHelp",
            "Microsoft.Getstarted", "Microsoft.MicrosoftSolitaireCollection",
            "Microsoft.ZuneMusic", "Microsoft.ZuneVideo", "Microsoft.People",
            "Microsoft.WindowsFeedbackHub", "Microsoft.Xbox*",
            "*CandyCrush*", "king.com.*", "SpotifyAB.SpotifyMusic",
        ],
        "allow": [
            "Microsoft.WindowsStore", "Microsoft.WindowsCalculator",
            "Microsoft.XboxGameCallableUI",
        ],
    },
    "telemetry": {
        "desired": {
            "DiagTrack": "Disabled",
            "dmwappushservice": "Disabled",
            "WerSvc": "Manual",
        },
    },
    "system_optimization": {
        "settings": {
            "MenuShowDelay": {
                "path": r"HKCU\Control Panel\Desktop",
                "type": "REG_SZ",
                "target": 100,
                "tolerance": 50,
            },
            "SystemResponsiveness": {
                "path": (r"HKLM\SOFTWARE\Microsoft\Windows NT\CurrentVersion"
                         r"\Multimedia\SystemProfile"),
                "type": "REG_DWORD",
                "target": 10,
                "tolerance": 0,
            },
        },
    },
}


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    SEARCH   = "\uf002"   # search (inventory)
    WRENCH   = "\uf0ad"   # wrench (reconciliation)
    FILE     = "\uf15c"   # file-text (reporting)
    SHIELD   = "\uf132"   # shield (restore point)
    TRASH    = "\uf1f8"   # trash (bloatware)
    MASK     = "\uf070"   # eye-slash (telemetry)
    GAUGE    = "\uf0e4"   # dashboard (optimization)
    FOLDER   = "\uf07b"   # folder (session)

COMPONENT_ICONS = {
    "BLOATWARE":           _I.TRASH,
    "TELEMETRY":           _I.MASK,
    "SYSTEM_OPTIMIZATION": _I.GAUGE,
}

COMPONENT_LABELS = {
    "BLOATWARE":           "Bloatware",
    "TELEMETRY":           "Telemetry",
    "SYSTEM_OPTIMIZATION": "System Optimization",
}

PHASE_ICONS = {
    "inventory":      _I.SEARCH,
    "reconciliation": _I.WRENCH,
    "reporting":      _I.FILE,
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Errors ───────────────────────────────────────────────────────────────────

class MaintenanceError(Exception):
    """Base class for every error winmaint raises on purpose."""


class SessionCreateError(MaintenanceError):
    """Session root could not be created, or already existed."""


class InvalidCategoryError(MaintenanceError):
    """Path requested outside the fixed session categories."""


class ConfigLoadError(MaintenanceError):
    pass


class AuditError(MaintenanceError):
    pass


class UnitTimeoutError(MaintenanceError):
    """A unit invocation overran; ``partial`` holds its result if it settled."""

    partial = None


class DiffComputeError(MaintenanceError):
    pass


class ApplyItemError(MaintenanceError):
    """One subject could not be applied; the unit carries on with the rest."""


class RestoreAllocationError(MaintenanceError):
    pass


class ReportCopyError(MaintenanceError):
    pass


class LogSinkError(MaintenanceError):
    pass


# ── Session ──────────────────────────────────────────────────────────────────

def new_session_id(now=None) -> str:
    """Timestamp plus a random suffix so two runs in one clock tick differ."""
    now = now or datetime.now()
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


@dataclass
class Session:
    id: str
    root: Path
    created_at: str
    dry_run: bool = False
    report_exported: bool = False

    def resolve_path(self, category: str, name: str = "") -> Path:
        """Return a path under one of the fixed session categories.

        *name* may contain sub-directories but must stay inside the
        category directory.
        """
        if category not in SESSION_CATEGORIES:
            raise InvalidCategoryError(
                f"Unknown session category '{category}' "
                f"(expected one of: {', '.join(SESSION_CATEGORIES)})"
            )
        rel = Path(name)
        if rel.is_absolute() or ".." in rel.parts:
            raise InvalidCategoryError(f"Path '{name}' escapes the '{category}' directory")
        return self.root / category / rel


def open_session(base_dir, dry_run: bool = False, session_id: str = None) -> Session:
    base_dir = Path(base_dir)
    sid = session_id or new_session_id()
    root = base_dir / f"session-{sid}"
    try:
        base_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SessionCreateError(f"Cannot create base directory {base_dir}: {exc}") from exc
    try:
        # exist_ok=False: an id collision must never reuse another run's tree
        root.mkdir()
        for category in SESSION_CATEGORIES:
            (root / category).mkdir()
    except FileExistsError:
        raise SessionCreateError(f"Session root {root} already exists") from None
    except OSError as exc:
        raise SessionCreateError(f"Cannot create session root {root}: {exc}") from exc
    return Session(id=sid, root=root, created_at=_now(), dry_run=dry_run)


def close_session(session: Session, keep_artifacts: bool = False) -> bool:
    """Remove the session tree; return True when it was removed.

    The tree is kept when *keep_artifacts* is set or when the report never
    made it outside the session root.
    """
    if keep_artifacts or not session.report_exported:
        return False
    try:
        shutil.rmtree(session.root)
    except OSError as exc:
        _warn(f"Could not remove session directory {session.root}: {exc}")
        return False
    return True


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
        fh.write("\n")
    os.replace(tmp, path)


class SessionManifest:
    """JSON record of one run: identity, phase outcomes and artifacts."""

    def __init__(self, session: Session):
        stamp = session.id.rsplit("-", 1)[0]
        self.path = session.resolve_path("data", f"session-{stamp}.json")
        self.session = session
        self.data: dict = {}

    def load(self) -> dict:
        if self.path.exists():
            with open(self.path, encoding="utf-8") as fh:
                self.data = json.load(fh)
        return self.data

    def save(self) -> None:
        _write_json(self.path, self.data)

    def start(self) -> None:
        self.data = {
            "id": self.session.id,
            "root": str(self.session.root),
            "started": self.session.created_at,
            "finished": None,
            "dry_run": self.session.dry_run,
            "phases": {},
            "components_audited": [],
            "components_skipped": [],
            "components_applied": [],
            "restore_state": None,
            "checkpoint": None,
            "report": None,
            "report_exported": None,
            "exit_code": None,
        }
        self.save()

    def finish(self) -> None:
        self.data["finished"] = _now()
        self.save()

    def record(self, key: str, value) -> None:
        """Append *value* to a list key, or set a scalar key.

        Mutates in-memory only.  Call ``save()`` at phase boundaries.
        """
        if isinstance(self.data.get(key), list):
            if value not in self.data[key]:
                self.data[key].append(value)
        else:
            self.data[key] = value

    def set_phase(self, phase: str, status: str) -> None:
        self.data.setdefault("phases", {})[phase] = status
        self.save()


# ── Structured log ───────────────────────────────────────────────────────────

def _check_keys(value) -> None:
    """Raise TypeError for mapping keys JSON would silently turn into strings."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"non-string key {key!r}")
            _check_keys(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_keys(item)


@dataclass(frozen=True)
class LogEntry:
    ts: str
    level: str
    component: str
    message: str
    data: Optional[dict] = None

    def to_line(self) -> str:
        payload = {
            "ts": self.ts,
            "level": self.level,
            "component": self.component,
            "message": self.message,
        }
        if self.data is not None:
            _check_keys(self.data)
            payload["data"] = self.data
        # ASCII escapes keep lone surrogates writable to a UTF-8 file
        return json.dumps(payload, ensure_ascii=True, allow_nan=False)

    @classmethod
    def from_line(cls, line: str) -> "LogEntry":
        """Parse one log line; raise ValueError when it is not a valid entry."""
        payload = json.loads(line)
        if not isinstance(payload, dict):
            raise ValueError("log line is not a JSON object")
        for key in ("ts", "level", "component", "message"):
            if not isinstance(payload.get(key), str):
                raise ValueError(f"log line missing '{key}'")
        if payload["level"] not in LEVELS:
            raise ValueError(f"unknown level '{payload['level']}'")
        data = payload.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValueError("log line 'data' is not an object")
        return cls(payload["ts"], payload["level"], payload["component"],
                   payload["message"], data)


class MaintenanceLog:
    """Append-only JSON-lines log shared by every stage of a session.

    Writes go through one lock.  When the primary file cannot be opened or
    written, entries are redirected to stderr and a single WARNING says so;
    later redirected entries do not repeat it.
    """

    SUMMARY_LIMIT = 500

    def __init__(self, path=None, quiet: bool = False, verbose: bool = False,
                 echo: bool = True, fallback=None):
        self.path = Path(path) if path else None
        self.quiet = quiet
        self.verbose = verbose
        self.echo = echo
        self.fallback = fallback or sys.stderr
        self.sink_error: Optional[LogSinkError] = None
        self._lock = threading.RLock()
        self._fh = None
        self._component_logs: dict = {}
        if self.path is None:
            self._degrade("no log path configured")
        else:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = open(self.path, "a", encoding="utf-8")
            except OSError as exc:
                self._degrade(f"cannot open {self.path}: {exc}")

    @property
    def degraded(self) -> bool:
        return self.sink_error is not None

    def attach_component_log(self, component: str, path: Path) -> Optional[Path]:
        """Mirror *component*'s entries to its own execution log."""
        with self._lock:
            if component in self._component_logs:
                return path
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._component_logs[component] = open(path, "a", encoding="utf-8")
            except OSError as exc:
                self.warning("LOGGER", f"Cannot open execution log for {component}: {exc}",
                             {"path": str(path)})
                return None
        return path

    def close(self) -> None:
        with self._lock:
            for fh in self._component_logs.values():
                fh.close()
            self._component_logs.clear()
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    # ── writing ──────────────────────────────────────────────────────────

    def log(self, level: str, component: str, message: str, data: dict = None) -> LogEntry:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level '{level}'")
        if component not in LOG_COMPONENTS:
            raise ValueError(f"Unknown log component '{component}'")

        entry = LogEntry(_now(), level, component, message,
                         dict(data) if data is not None else None)
        truncated = False
        try:
            line = entry.to_line()
        except (TypeError, ValueError):
            summary = repr(data)[:self.SUMMARY_LIMIT]
            entry = LogEntry(entry.ts, level, component, message, {"summary": summary})
            line = entry.to_line()
            truncated = True

        with self._lock:
            self._write(line, component)
            if truncated:
                note = LogEntry(_now(), "WARNING", "LOGGER",
                                f"Data for '{message}' was not serialisable; "
                                f"stored a string summary instead",
                                {"component": component})
                self._write(note.to_line(), "LOGGER")

        self._echo(entry)
        return entry

    def debug(self, component, message, data=None):
        return self.log("DEBUG", component, message, data)

    def info(self, component, message, data=None):
        return self.log("INFO", component, message, data)

    def success(self, component, message, data=None):
        return self.log("SUCCESS", component, message, data)

    def warning(self, component, message, data=None):
        return self.log("WARNING", component, message, data)

    def error(self, component, message, data=None):
        return self.log("ERROR", component, message, data)

    def fatal(self, component, message, data=None):
        return self.log("FATAL", component, message, data)

    def _write(self, line: str, component: str) -> None:
        if self._fh is not None:
            try:
                self._fh.write(line + "\n")
                self._fh.flush()
            except OSError as exc:
                self._degrade(f"write to {self.path} failed: {exc}")
        if self._fh is None:
            self.fallback.write(line + "\n")
            self.fallback.flush()

        mirror = self._component_logs.get(component)
        if mirror is not None:
            try:
                mirror.write(line + "\n")
                mirror.flush()
            except OSError:
                del self._component_logs[component]

    def _degrade(self, reason: str) -> None:
        if self.sink_error is not None:
            return
        self.sink_error = LogSinkError(reason)
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None
        note = LogEntry(_now(), "WARNING", "LOGGER",
                        f"Primary log sink unavailable ({reason}); "
                        f"writing entries to stderr",
                        {"path": str(self.path) if self.path else None})
        self.fallback.write(note.to_line() + "\n")
        self.fallback.flush()
        if self.echo:
            _warn(note.message)

    def _echo(self, entry: LogEntry) -> None:
        if not self.echo:
            return
        level, msg = entry.level, entry.message
        if entry.data and entry.data.get("dry_run"):
            _dry(msg)
        elif level == "DEBUG":
            if self.verbose:
                _skip(msg)
        elif level == "INFO":
            if not self.quiet:
                _info(msg)
        elif level == "SUCCESS":
            if not self.quiet:
                _info(f"{_I.CHECK}  {msg}")
        elif level == "WARNING":
            _warn(msg)
        else:
            _error(msg)


# ── Host commands ────────────────────────────────────────────────────────────

def _ps_quote(value: str) -> str:
    """Quote *value* as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def _own_process_group() -> dict:
    """subprocess.run() arguments that keep Ctrl+C away from a mutating child.

    The run-level SIGINT handler cancels between items; the change in flight
    must be allowed to finish.
    """
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class HostRunner:
    """Runs host commands.  Mutating commands are only echoed under --dry-run."""

    POWERSHELL = ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command"]

    def __init__(self, dry_run: bool = False, quiet: bool = False, timeout=None):
        self.dry_run = dry_run
        self.quiet = quiet
        self.timeout = timeout

    def run(self, cmd, check=True, capture=False, mutating=False, timeout=None):
        """Execute *cmd*, or print it if it mutates the host under --dry-run."""
        pretty = " ".join(str(c) for c in cmd)
        if mutating and self.dry_run:
            _dry(pretty)
            return None
        if mutating and not self.quiet:
            _info(f"Running: {pretty}")
        extra = _own_process_group() if mutating else {}
        result = subprocess.run(
            cmd, check=check,
            capture_output=capture, text=capture,
            timeout=timeout or self.timeout,
            **extra,
        )
        if not check and result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def powershell(self, script: str, **kwargs):
        return self.run(self.POWERSHELL + [script], **kwargs)

    def powershell_json(self, script: str, timeout=None) -> list:
        """Run a read-only pipeline and return its objects as a list of dicts."""
        result = self.powershell(
            f"{script} | ConvertTo-Json -Depth 3 -Compress",
            check=True, capture=True, timeout=timeout,
        )
        out = (result.stdout or "").strip()
        if not out:
            return []
        data = json.loads(out)
        return data if isinstance(data, list) else [data]


# ── Audit contract ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Subject:
    """One audited thing; *key* is the stable identity used for diffing."""
    key: str
    name: str = ""
    attrs: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AuditResult:
    component: str
    items: tuple = ()
    collected_at: str = field(default_factory=_now)

    def keys(self) -> list:
        return [s.key for s in self.items]

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "collected_at": self.collected_at,
            "items": [asdict(s) for s in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditResult":
        items = tuple(Subject(**item) for item in data.get("items", []))
        return cls(data["component"], items, data.get("collected_at") or _now())


@dataclass
class UnitContext:
    """Everything a unit may touch during one invocation.

    Units write only through ``log`` and into paths resolved from
    ``session``; ``cancel`` is set when the orchestrator gives up on the
    invocation and ``abort`` when the whole run is being cancelled.
    ``progress`` holds live item counters while a diff is being applied.
    """
    log: MaintenanceLog
    runner: HostRunner
    session: Optional[Session] = None
    dry_run: bool = False
    timeout: Optional[float] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    abort: Optional[threading.Event] = None
    progress: dict = field(default_factory=dict)

    def cancelled(self) -> bool:
        return self.cancel.is_set() or (self.abort is not None and self.abort.is_set())


class AuditUnit:
    """Read-only inspection of one maintenance domain."""

    component = None

    def inspect(self, config: dict, ctx: UnitContext) -> AuditResult:
        raise NotImplementedError

    def _cache_raw(self, ctx: UnitContext, raw) -> None:
        if ctx.session is None:
            return
        _write_json(ctx.session.resolve_path(
            "inventory", f"{self.component.lower()}-raw.json"), raw)


class BloatwareAudit(AuditUnit):
    component = "BLOATWARE"

    def inspect(self, config, ctx):
        try:
            rows = ctx.runner.powershell_json(
                "Get-AppxPackage -AllUsers | "
                "Select-Object Name, PackageFullName, Version",
                timeout=ctx.timeout,
            )
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            raise AuditError(f"Cannot list Appx packages: {exc}") from exc
        self._cache_raw(ctx, rows)
        items = tuple(
            Subject(
                key=row["Name"],
                name=row.get("PackageFullName") or row["Name"],
                attrs={"version": row.get("Version"), "present": True},
            )
            for row in rows if row.get("Name")
        )
        return AuditResult(self.component, items)


class TelemetryAudit(AuditUnit):
    component = "TELEMETRY"

    def inspect(self, config, ctx):
        names = list(config.get("desired", {}))
        if not names:
            return AuditResult(self.component, ())
        script = (
            "Get-Service -Name " + ",".join(_ps_quote(n) for n in names)
            + " -ErrorAction SilentlyContinue | Select-Object Name, "
            "@{n='StartType';e={$_.StartType.ToString()}}, "
            "@{n='Status';e={$_.Status.ToString()}}"
        )
        try:
            rows = ctx.runner.powershell_json(script, timeout=ctx.timeout)
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            raise AuditError(f"Cannot query services: {exc}") from exc
        self._cache_raw(ctx, rows)
        # Services that do not exist on this host are simply not reported.
        items = tuple(
            Subject(key=row["Name"], name=row["Name"],
                    attrs={"state": row.get("StartType"), "status": row.get("Status")})
            for row in rows if row.get("Name")
        )
        return AuditResult(self.component, items)


_REG_VALUE_RE = r"^\s*{name}\s+(REG_\w+)\s*(.*?)\s*$"


def parse_reg_query(output: str, name: str):
    """Return (type, value) for *name* from ``reg query`` output, or (None, None)."""
    pattern = re.compile(_REG_VALUE_RE.format(name=re.escape(name)),
                         re.IGNORECASE | re.MULTILINE)
    m = pattern.search(output or "")
    if not m:
        return None, None
    reg_type, raw = m.group(1).upper(), m.group(2)
    if reg_type in ("REG_DWORD", "REG_QWORD"):
        try:
            return reg_type, int(raw, 16)
        except ValueError:
            return reg_type, raw
    return reg_type, raw


class OptimizationAudit(AuditUnit):
    component = "SYSTEM_OPTIMIZATION"

    def inspect(self, config, ctx):
        items = []
        raw = {}
        for name, setting in config.get("settings", {}).items():
            path = setting.get("path") if isinstance(setting, dict) else None
            if not path:
                raise AuditError(f"Setting '{name}' has no registry path")
            try:
                r = ctx.runner.run(["reg", "query", path, "/v", name],
                                   check=False, capture=True, timeout=ctx.timeout)
            except (OSError, subprocess.SubprocessError) as exc:
                raise AuditError(f"Cannot query {path}\\{name}: {exc}") from exc
            raw[name] = r.stdout
            reg_type, value = (None, None)
            if r.returncode == 0:
                reg_type, value = parse_reg_query(r.stdout, name)
            items.append(Subject(key=name, name=f"{path}\\{name}",
                                 attrs={"path": path, "type": reg_type, "value": value}))
        self._cache_raw(ctx, raw)
        return AuditResult(self.component, tuple(items))


# ── Diff engine ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DiffList:
    component: str
    adds: tuple = ()
    policy: dict = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.adds

    def to_json(self) -> str:
        """Serialise without timestamps so equal diffs are byte-identical."""
        return json.dumps(
            {"component": self.component, "adds": list(self.adds), "policy": self.policy},
            indent=2, sort_keys=True,
        ) + "\n"

    @classmethod
    def from_json(cls, text: str) -> "DiffList":
        data = json.loads(text)
        return cls(data["component"], tuple(data.get("adds", [])), data.get("policy", {}))


def _matches_any(key: str, patterns) -> bool:
    low = key.lower()
    return any(fnmatch.fnmatchcase(low, str(p).lower()) for p in patterns)


def _deny_list_diff(result: AuditResult, config: dict):
    """Subjects still present that match a deny pattern and no allow pattern."""
    deny = config.get("deny", [])
    allow = config.get("allow", [])
    if not isinstance(deny, list) or not isinstance(allow, list):
        raise DiffComputeError("'deny' and 'allow' must be lists of patterns")
    keys = [
        s.key for s in result.items
        if s.attrs.get("present", True)
        and _matches_any(s.key, deny)
        and not _matches_any(s.key, allow)
    ]
    return keys, {"strategy": "deny-list", "deny": deny, "allow": allow}


def _desired_state_diff(result: AuditResult, config: dict):
    """Subjects whose current state differs from the declared one."""
    desired = config.get("desired", {})
    if not isinstance(desired, dict):
        raise DiffComputeError("'desired' must map keys to states")
    keys = []
    for s in result.items:
        want = desired.get(s.key)
        if want is None:
            continue
        have = s.attrs.get("state")
        if have is None or str(have).lower() != str(want).lower():
            keys.append(s.key)
    return keys, {"strategy": "desired-state", "desired": desired}


def _threshold_diff(result: AuditResult, config: dict):
    """Numeric subjects further than their tolerance from the target.

    A missing value counts as out of range, since writing the target
    changes it.
    """
    settings = config.get("settings", {})
    if not isinstance(settings, dict):
        raise DiffComputeError("'settings' must map names to thresholds")
    keys = []
    applied = {}
    for s in result.items:
        bound = settings.get(s.key)
        if bound is None:
            continue
        try:
            target = float(bound["target"])
            tolerance = float(bound.get("tolerance", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise DiffComputeError(f"Bad threshold for '{s.key}': {exc}") from exc
        if tolerance < 0:
            raise DiffComputeError(f"Negative tolerance for '{s.key}'")
        applied[s.key] = {"target": target, "tolerance": tolerance}
        current = s.attrs.get("value")
        if current is None:
            keys.append(s.key)
            continue
        try:
            current = float(current)
        except (TypeError, ValueError):
            raise DiffComputeError(
                f"'{s.key}' has non-numeric value {current!r}") from None
        if abs(current - target) > tolerance:
            keys.append(s.key)
    return keys, {"strategy": "threshold", "settings": applied}


DIFF_STRATEGIES = {
    "deny-list": _deny_list_diff,
    "desired-state": _desired_state_diff,
    "threshold": _threshold_diff,
}


def compute_diff(result: AuditResult, config: dict, strategy: str) -> DiffList:
    """Diff *result* against *config* using one of DIFF_STRATEGIES.

    Keys keep their audit order; repeats are dropped.  Nothing to do yields
    an empty DiffList, never None.
    """
    try:
        fn = DIFF_STRATEGIES[strategy]
    except KeyError:
        raise DiffComputeError(f"Unknown diff strategy '{strategy}'") from None
    if not isinstance(config, dict):
        raise DiffComputeError(f"Configuration for {result.component} must be a mapping")
    keys, policy = fn(result, config)
    seen = set()
    adds = []
    for key in keys:
        if key not in seen:
            seen.add(key)
            adds.append(key)
    return DiffList(result.component, tuple(adds), policy)


# ── Execution contract ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionOutcome:
    component: str
    success: bool
    items_detected: int = 0
    items_processed: int = 0
    items_failed: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    log_path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionOutcome":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


class ExecutionUnit:
    """Applies a diff for one maintenance domain.

    Subclasses set the paired ``audit_unit`` and ``diff_strategy`` and
    implement ``apply_item``, which raises ApplyItemError for one subject.
    """

    component = None
    audit_unit = None
    diff_strategy = None
    resource_class = None
    verb = "apply"
    done = "Applied"

    def apply_item(self, key: str, config: dict, ctx: UnitContext) -> None:
        raise NotImplementedError

    def apply_auto(self, config: dict, ctx: UnitContext) -> ExecutionOutcome:
        """Audit and diff internally, then apply."""
        t0 = time.monotonic()
        try:
            result = self.audit_unit().inspect(config, ctx)
            diff = compute_diff(result, config, self.diff_strategy)
        except (AuditError, DiffComputeError) as exc:
            ctx.log.warning(self.component, f"Cannot compute changes: {exc}")
            return self._outcome(ctx, t0, 0, 0, 0, error=str(exc))
        return self.apply_with_diff(config, diff, ctx)

    def apply_with_diff(self, config: dict, diff: DiffList, ctx: UnitContext) -> ExecutionOutcome:
        t0 = time.monotonic()
        if diff.is_empty:
            ctx.log.info(self.component, "Nothing to do: target state already met")
            return self._outcome(ctx, t0, 0, 0, 0)

        keys = list(diff.adds)
        processed = failed = 0
        ctx.progress.update(detected=len(keys), processed=0, failed=0)
        for idx, key in enumerate(keys):
            if ctx.cancelled():
                remaining = len(keys) - idx
                failed += remaining
                ctx.log.warning(self.component,
                                f"Stopped before '{key}'; {remaining} item(s) not attempted",
                                {"remaining": keys[idx:]})
                break
            if ctx.dry_run:
                ctx.log.info(self.component, f"Would {self.verb} {key}",
                             {"key": key, "dry_run": True})
                processed += 1
            else:
                try:
                    self.apply_item(key, config, ctx)
                except ApplyItemError as exc:
                    failed += 1
                    ctx.log.error(self.component, f"Failed to {self.verb} {key}: {exc}",
                                  {"key": key})
                else:
                    processed += 1
                    ctx.log.success(self.component, f"{self.done} {key}", {"key": key})
            ctx.progress.update(processed=processed, failed=failed)

        ctx.progress.update(processed=processed, failed=failed)
        return self._outcome(ctx, t0, len(keys), processed, failed)

    def _outcome(self, ctx, t0, detected, processed, failed, error=None) -> ExecutionOutcome:
        log_path = None
        if ctx.session is not None:
            log_path = str(ctx.session.resolve_path(
                "logs", f"{self.component.lower()}/execution.log"))
        return ExecutionOutcome(
            component=self.component,
            success=failed == 0 and error is None,
            items_detected=detected,
            items_processed=processed,
            items_failed=failed,
            duration_ms=int((time.monotonic() - t0) * 1000),
            dry_run=ctx.dry_run,
            log_path=log_path,
            error=error,
        )

    def _host(self, what: str, call) -> None:
        try:
            call()
        except (OSError, subprocess.SubprocessError) as exc:
            raise ApplyItemError(f"{what}: {exc}") from exc


class BloatwareRemoval(ExecutionUnit):
    component = "BLOATWARE"
    audit_unit = BloatwareAudit
    diff_strategy = "deny-list"
    resource_class = "appx"
    verb = "remove"
    done = "Removed"

    def apply_item(self, key, config, ctx):
        script = (f"Get-AppxPackage -AllUsers -Name {_ps_quote(key)} | "
                  f"Remove-AppxPackage -AllUsers -ErrorAction Stop")
        self._host("Remove-AppxPackage",
                   lambda: ctx.runner.powershell(script, mutating=True, timeout=ctx.timeout))


SERVICE_START_TYPES = ("Automatic", "AutomaticDelayedStart", "Manual", "Disabled")


class TelemetryReconfigure(ExecutionUnit):
    component = "TELEMETRY"
    audit_unit = TelemetryAudit
    diff_strategy = "desired-state"
    resource_class = "services"
    verb = "reconfigure"
    done = "Reconfigured"

    def apply_item(self, key, config, ctx):
        want = config.get("desired", {}).get(key)
        matches = [t for t in SERVICE_START_TYPES if t.lower() == str(want).lower()]
        if not matches:
            raise ApplyItemError(f"Unsupported start type {want!r} for service {key}")
        start_type = matches[0]
        script = f"Set-Service -Name {_ps_quote(key)} -StartupType {start_type} -ErrorAction Stop"
        if start_type == "Disabled":
            script += f"; Stop-Service -Name {_ps_quote(key)} -Force -ErrorAction SilentlyContinue"
        self._host("Set-Service",
                   lambda: ctx.runner.powershell(script, mutating=True, timeout=ctx.timeout))


class OptimizationTune(ExecutionUnit):
    component = "SYSTEM_OPTIMIZATION"
    audit_unit = OptimizationAudit
    diff_strategy = "threshold"
    resource_class = "registry"
    verb = "set"
    done = "Set"

    def apply_item(self, key, config, ctx):
        setting = config.get("settings", {}).get(key)
        if not isinstance(setting, dict) or "path" not in setting or "target" not in setting:
            raise ApplyItemError(f"No target configured for {key}")
        reg_type = setting.get("type", "REG_DWORD")
        target = setting["target"]
        if reg_type in ("REG_DWORD", "REG_QWORD"):
            try:
                target = int(target)
            except (TypeError, ValueError):
                raise ApplyItemError(f"Target {target!r} for {key} is not an integer") from None
        cmd = ["reg", "add", setting["path"], "/v", key,
               "/t", reg_type, "/d", str(target), "/f"]
        self._host("reg add",
                   lambda: ctx.runner.run(cmd, mutating=True, timeout=ctx.timeout))


COMPONENT_UNITS = {
    "BLOATWARE":           (BloatwareAudit, BloatwareRemoval),
    "TELEMETRY":           (TelemetryAudit, TelemetryReconfigure),
    "SYSTEM_OPTIMIZATION": (OptimizationAudit, OptimizationTune),
}


# ── Restore safety net ───────────────────────────────────────────────────────

RESTORE_STATES = (
    "Unprotected", "Checking", "Adequate", "Insufficient",
    "Allocating", "Verified", "Failed",
)

_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3,
               "TB": 1024 ** 4, "PB": 1024 ** 5, "EB": 1024 ** 6}

_SHADOW_MAX_RE = re.compile(
    r"Maximum Shadow Copy Storage space:\s*(UNBOUNDED|([\d.,]+)\s*(B|KB|MB|GB|TB|PB|EB))",
    re.IGNORECASE,
)


def _parse_localized_number(text: str) -> float:
    """Parse ``1,023.5``, ``1.023,5``, ``9,5`` or ``1,024,000``.

    When both separators appear the last one is the decimal point; a single
    separator that repeats is digit grouping.
    """
    comma, dot = text.rfind(","), text.rfind(".")
    if comma >= 0 and dot >= 0:
        if comma > dot:
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(",") > 1:
        text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")
    else:
        text = text.replace(",", ".")
    return float(text)


def parse_shadow_storage(output: str) -> int:
    """Maximum shadow storage in bytes from ``vssadmin list shadowstorage``.

    No association for the drive means nothing is allocated (0).  Raises
    ValueError when the size cannot be read.
    """
    m = _SHADOW_MAX_RE.search(output or "")
    if not m:
        return 0
    if m.group(1).upper() == "UNBOUNDED":
        return sys.maxsize
    number = _parse_localized_number(m.group(2))
    return int(number * _SIZE_UNITS[m.group(3).upper()])


@dataclass(frozen=True)
class RestoreCheckpoint:
    drive_letter: str
    allocated_bytes: int
    created_at: str
    description: str


class RestoreSafetyNet:
    """Guarantees rollback storage, then creates one restore point.

    Unprotected → Checking → (Adequate | Insufficient) → Allocating →
    Verified | Failed.  A checkpoint is only attempted from Verified and
    nothing here ever aborts the run.
    """

    def __init__(self, runner: HostRunner, log: MaintenanceLog, min_bytes: int,
                 drive: str = DEFAULT_SYSTEM_DRIVE, dry_run: bool = False, timeout=None):
        self.runner = runner
        self.log = log
        self.min_bytes = int(min_bytes)
        self.drive = drive
        self.dry_run = dry_run
        self.timeout = timeout
        self.state = "Unprotected"
        self.history = ["Unprotected"]
        self.allocated_bytes: Optional[int] = None
        self.checkpoint: Optional[RestoreCheckpoint] = None

    def _to(self, state: str) -> None:
        self.state = state
        self.history.append(state)
        self.log.debug("RESTORE", f"Safety net → {state}")

    def query_allocation(self) -> int:
        try:
            r = self.runner.run(
                ["vssadmin", "list", "shadowstorage", f"/For={self.drive}"],
                check=False, capture=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise RestoreAllocationError(f"vssadmin list failed: {exc}") from exc
        try:
            return parse_shadow_storage(r.stdout)
        except (KeyError, ValueError) as exc:
            raise RestoreAllocationError(f"Cannot read vssadmin size: {exc}") from exc

    def allocate(self, size_bytes: int) -> None:
        size_gb = max(1, -(-size_bytes // GB))
        try:
            self.runner.run(
                ["vssadmin", "resize", "shadowstorage", f"/For={self.drive}",
                 f"/On={self.drive}", f"/MaxSize={size_gb}GB"],
                check=True, capture=True, mutating=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise RestoreAllocationError(f"vssadmin resize failed: {exc}") from exc

    def ensure_capacity(self) -> bool:
        """Drive the state machine to Verified; return True when it got there."""
        self._to("Checking")
        try:
            current = self.query_allocation()
        except RestoreAllocationError as exc:
            self._to("Failed")
            self.log.warning("RESTORE", f"Cannot read restore storage allocation: {exc}")
            return False
        self.allocated_bytes = current

        if current >= self.min_bytes:
            self._to("Adequate")
            self._to("Verified")
            self.log.info("RESTORE", f"Restore storage on {self.drive} is adequate "
                          f"({current / GB:.1f} GB ≥ {self.min_bytes / GB:.1f} GB)")
            return True

        self._to("Insufficient")
        self.log.info("RESTORE", f"Restore storage on {self.drive} is "
                      f"{current / GB:.1f} GB, below the {self.min_bytes / GB:.1f} GB minimum",
                      {"allocated_bytes": current, "min_bytes": self.min_bytes})
        if self.dry_run:
            self.log.info("RESTORE", f"Would raise restore storage to {self.min_bytes / GB:.1f} GB",
                          {"dry_run": True})
            return False

        self._to("Allocating")
        try:
            self.allocate(self.min_bytes)
            current = self.query_allocation()
            if current < self.min_bytes:
                raise RestoreAllocationError(
                    f"allocation still {current / GB:.1f} GB after resize")
        except RestoreAllocationError as exc:
            self._to("Failed")
            self.log.warning("RESTORE", f"Could not raise restore storage: {exc}",
                             {"allocated_bytes": current, "min_bytes": self.min_bytes})
            return False

        self.allocated_bytes = current
        self._to("Verified")
        self.log.success("RESTORE", f"Restore storage raised to {current / GB:.1f} GB")
        return True

    def create_checkpoint(self, description: str) -> Optional[RestoreCheckpoint]:
        if self.state != "Verified":
            self.log.warning("RESTORE", f"Skipping restore point: safety net is {self.state}")
            return None
        if self.dry_run:
            self.log.info("RESTORE", f"Would create restore point '{description}'",
                          {"dry_run": True})
            return None
        root = self.drive.rstrip("\\") + "\\"
        script = (
            f"Enable-ComputerRestore -Drive {_ps_quote(root)}; "
            f"Checkpoint-Computer -Description {_ps_quote(description)} "
            f"-RestorePointType MODIFY_SETTINGS -ErrorAction Stop"
        )
        try:
            self.runner.powershell(script, check=True, capture=True,
                                   mutating=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            self.log.warning("RESTORE", f"Restore point creation failed: {exc}")
            return None
        self.checkpoint = RestoreCheckpoint(
            drive_letter=self.drive,
            allocated_bytes=self.allocated_bytes or 0,
            created_at=_now(),
            description=description,
        )
        self.log.success("RESTORE", f"Created restore point '{description}'",
                         asdict(self.checkpoint))
        return self.checkpoint

    def protect(self, description: str) -> Optional[RestoreCheckpoint]:
        self.ensure_capacity()
        return self.create_checkpoint(description)


# ── Log processing ───────────────────────────────────────────────────────────

@dataclass
class LogSummary:
    total_entries: int = 0
    malformed_lines: list = field(default_factory=list)
    level_counts: dict = field(default_factory=lambda: {lvl: 0 for lvl in LEVELS})
    component_health: dict = field(default_factory=dict)
    error_index: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def load_outcomes(session: Session, log: MaintenanceLog = None) -> list:
    """Read every ``data/<component>-outcome.json`` back from disk."""
    outcomes = []
    for path in sorted(session.resolve_path("data").glob("*-outcome.json")):
        try:
            with open(path, encoding="utf-8") as fh:
                outcomes.append(ExecutionOutcome.from_dict(json.load(fh)))
        except (OSError, ValueError, TypeError) as exc:
            if log is not None:
                log.warning("LOG_PROCESSOR", f"Skipping unreadable outcome {path.name}: {exc}")
    order = {c: i for i, c in enumerate(UNIT_COMPONENTS)}
    outcomes.sort(key=lambda o: (order.get(o.component, len(order)), o.component))
    return outcomes


def _health(outcome: Optional[ExecutionOutcome], errors: int, warnings: int) -> dict:
    if outcome is None:
        return {"status": "skipped", "success_ratio": 0.0, "errors": errors,
                "warnings": warnings, "items_detected": 0, "items_processed": 0,
                "items_failed": 0, "duration_ms": 0, "dry_run": False}
    if outcome.items_detected:
        ratio = outcome.items_processed / outcome.items_detected
    else:
        ratio = 1.0 if outcome.success else 0.0
    if not outcome.success:
        status = "failed"
    elif warnings or errors:
        status = "warning"
    else:
        status = "success"
    return {"status": status, "success_ratio": round(ratio, 4), "errors": errors,
            "warnings": warnings, "items_detected": outcome.items_detected,
            "items_processed": outcome.items_processed,
            "items_failed": outcome.items_failed,
            "duration_ms": outcome.duration_ms, "dry_run": outcome.dry_run}


def process_logs(log_path, outcomes, log: MaintenanceLog = None) -> LogSummary:
    """Aggregate the consolidated log plus unit outcomes into metrics.

    Blank lines are ignored; malformed lines are skipped with one WARNING
    each and never stop the parse.
    """
    summary = LogSummary()
    entries = []
    try:
        with open(log_path, encoding="utf-8", errors="replace") as fh:
            lines = fh.readlines()
    except OSError as exc:
        lines = []
        if log is not None:
            log.warning("LOG_PROCESSOR", f"Cannot read log {log_path}: {exc}")

    for lineno, raw in enumerate(lines, 1):
        if not raw.strip():
            continue
        try:
            entries.append(LogEntry.from_line(raw))
        except ValueError as exc:
            summary.malformed_lines.append(lineno)
            if log is not None:
                log.warning("LOG_PROCESSOR", f"Skipped malformed log line {lineno}: {exc}")

    summary.total_entries = len(entries)
    errors = defaultdict(int)
    warnings = defaultdict(int)
    for e in entries:
        summary.level_counts[e.level] += 1
        if e.level in ("ERROR", "FATAL"):
            errors[e.component] += 1
        elif e.level == "WARNING":
            warnings[e.component] += 1

    by_component = {o.component: o for o in outcomes}
    components = [c for c in UNIT_COMPONENTS
                  if c in by_component or errors[c] or warnings[c]]
    components += sorted(c for c in by_component if c not in components)
    for c in components:
        summary.component_health[c] = _health(by_component.get(c), errors[c], warnings[c])

    # sorted() is stable, so entries sharing a timestamp keep write order
    summary.error_index = [
        {"ts": e.ts, "level": e.level, "component": e.component, "message": e.message}
        for e in sorted((e for e in entries if e.level in ("ERROR", "FATAL")),
                        key=lambda e: e.ts)
    ]
    return summary


# ── Report ───────────────────────────────────────────────────────────────────

REPORT_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en" data-theme="light">
<head>
<meta charset="utf-8">
<title>$title</title>
<style>
body { font-family: "Segoe UI", system-ui, sans-serif; margin: 32px; color: #1f2430; }
.meta { color: #5b6275; font-size: 13px; }
.module-card { border: 1px solid #d7dbe6; border-radius: 10px; padding: 12px 16px; margin: 12px 0; }
.module-card[data-status="success"] { border-left: 6px solid #2da44e; }
.module-card[data-status="warning"] { border-left: 6px solid #d4a72c; }
.module-card[data-status="failed"]  { border-left: 6px solid #cf222e; }
.module-card[data-status="skipped"] { border-left: 6px solid #8c959f; }
.module-stats span { margin-right: 16px; }
table { border-collapse: collapse; }
td, th { padding: 4px 10px; border-bottom: 1px solid #eaeef2; text-align: left; }
</style>
</head>
<body>
<h1>$title</h1>
<div class="metadata">
  <div class="metadata-item"><span class="metadata-label">Session</span> <span class="metadata-value">$session_id</span></div>
  <div class="metadata-item"><span class="metadata-label">Generated</span> <span class="metadata-value">$generated</span></div>
  <div class="metadata-item"><span class="metadata-label">Mode</span> <span class="metadata-value">$mode</span></div>
  <div class="metadata-item"><span class="metadata-label">Restore point</span> <span class="metadata-value">$restore</span></div>
</div>
<h2>Log levels</h2>
<table>$level_rows</table>
<h2>Modules</h2>
<div id="modules-container">
$module_cards
</div>
<h2>Errors</h2>
<table>$error_rows</table>
</body>
</html>
"""


class ReportRenderer:
    """Renders the session report and copies it out of the session root."""

    def __init__(self, session: Session, log: MaintenanceLog, template_path=None):
        self.session = session
        self.log = log
        self.template = string.Template(REPORT_TEMPLATE)
        if template_path:
            try:
                with open(template_path, encoding="utf-8") as fh:
                    self.template = string.Template(fh.read())
            except OSError as exc:
                log.warning("REPORT", f"Cannot read template {template_path}: {exc}; "
                            f"using the built-in one")

    def _module_card(self, component, health, audit, diff) -> str:
        e = html.escape
        label = COMPONENT_LABELS.get(component, component)
        items = ""
        if diff is not None and diff.adds:
            items = "".join(f"<li>{e(k)}</li>" for k in diff.adds)
            items = f"<ul>{items}</ul>"
        audited = len(audit.items) if audit is not None else 0
        return (
            f'<section class="module-card" data-module="{e(component)}" '
            f'data-status="{e(health["status"])}">\n'
            f"  <h3>{e(label)}</h3>\n"
            f'  <div class="module-stats">'
            f"<span>audited {audited}</span>"
            f"<span>detected {health['items_detected']}</span>"
            f"<span>processed {health['items_processed']}</span>"
            f"<span>failed {health['items_failed']}</span>"
            f"<span>errors {health['errors']}</span>"
            f"<span>{health['duration_ms']} ms</span></div>\n"
            f'  <div class="module-body" id="module-body-{e(component.lower())}">{items}</div>\n'
            f"</section>"
        )

    def render(self, summary: LogSummary, audits: dict, diffs: dict,
               checkpoint: Optional[RestoreCheckpoint] = None,
               restore_state: str = None) -> Path:
        e = html.escape
        level_rows = "".join(
            f"<tr><th>{e(lvl)}</th><td>{n}</td></tr>"
            for lvl, n in summary.level_counts.items()
        )
        cards = "\n".join(
            self._module_card(c, h, audits.get(c), diffs.get(c))
            for c, h in summary.component_health.items()
        )
        error_rows = "".join(
            f"<tr><td>{e(x['ts'])}</td><td>{e(x['component'])}</td>"
            f"<td>{e(x['message'])}</td></tr>"
            for x in summary.error_index
        ) or "<tr><td>No errors</td></tr>"
        if checkpoint is not None:
            restore = f"{checkpoint.description} ({checkpoint.drive_letter}, {checkpoint.created_at})"
        else:
            restore = f"none ({restore_state or 'not attempted'})"

        text = self.template.safe_substitute(
            title=e("Windows Maintenance Report"),
            session_id=e(self.session.id),
            generated=e(_now()),
            mode="dry run" if self.session.dry_run else "apply",
            restore=e(restore),
            level_rows=level_rows,
            module_cards=cards,
            error_rows=error_rows,
        )
        path = self.session.resolve_path("reports", f"maintenance-report-{self.session.id}.html")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(text)
        self.log.info("REPORT", f"Report written to {path}")
        return path

    def export(self, artifact: Path, destination) -> Optional[Path]:
        """Copy *artifact* into *destination* and confirm it arrived intact."""
        target = Path(destination) / artifact.name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(artifact, target)
            if not target.exists() or target.stat().st_size != artifact.stat().st_size:
                raise ReportCopyError(f"{target} missing or incomplete after copy")
        except (OSError, ReportCopyError) as exc:
            self.log.warning("REPORT", f"Could not copy report to {destination}: {exc}; "
                             f"kept at {artifact}")
            return None
        self.session.report_exported = True
        self.log.success("REPORT", f"Report copied to {target}")
        return target


# ── Configuration ────────────────────────────────────────────────────────────

def load_config(path=None) -> dict:
    """Built-in defaults, overridden per component by a JSON file."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is None:
        return config
    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
    except OSError as exc:
        raise ConfigLoadError(f"Cannot read config {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigLoadError(f"Invalid JSON in config {path}: {exc}") from exc
    if not isinstance(user, dict):
        raise ConfigLoadError(f"Config {path} must contain a JSON object")
    for key, value in user.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key] = {**config[key], **value}
        else:
            config[key] = value
    return config


def is_admin() -> bool:
    if os.name == "nt":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


# ── Orchestrator ─────────────────────────────────────────────────────────────

class MaintenanceRun:

    def __init__(self, config: dict, dry_run: bool = False,
                 min_restore_gb: float = DEFAULT_MIN_RESTORE_GB,
                 skip_components=(), base_dir=None, report_dir=None,
                 timeout: float = DEFAULT_UNIT_TIMEOUT, parallel_audits: int = 1,
                 cancel_grace: float = DEFAULT_CANCEL_GRACE,
                 keep_session: bool = False, yes: bool = False,
                 quiet: bool = False, verbose: bool = False,
                 registry: dict = None, runner: HostRunner = None):
        self.config = config
        self.dry_run = dry_run
        self.min_restore_gb = min_restore_gb
        self.skip = set(skip_components)
        self.base_dir = Path(base_dir) if base_dir else DEFAULT_BASE_DIR
        self.report_dir = Path(report_dir) if report_dir else None
        self.timeout = timeout
        self.parallel_audits = max(1, int(parallel_audits))
        self.cancel_grace = cancel_grace
        self.keep_session = keep_session
        self.yes = yes
        self.quiet = quiet
        self.verbose = verbose
        self.registry = registry if registry is not None else COMPONENT_UNITS
        self.runner = runner or HostRunner(dry_run=dry_run, quiet=quiet)
        self.components = [c for c in self.registry if c not in self.skip]

        self.cancel = threading.Event()
        self.session: Optional[Session] = None
        self.log: Optional[MaintenanceLog] = None
        self.manifest: Optional[SessionManifest] = None
        self.safety_net: Optional[RestoreSafetyNet] = None
        self.report_path: Optional[Path] = None
        self.exported_path: Optional[Path] = None
        self.summary: Optional[LogSummary] = None
        self.audits: dict = {}
        self.diffs: dict = {}
        self.outcomes: dict = {}
        self.failures: dict = {}
        self.phase_status: dict = {}
        self._resource_locks = defaultdict(threading.Lock)
        self._t0 = None
        self._step = 0
        self._total = len(PHASES)

    # ── helpers ───────────────────────────────────────────────────────────

    def component_config(self, component: str) -> dict:
        return self.config.get(component.lower(), {})

    def _context(self, component: str) -> UnitContext:
        self.log.attach_component_log(
            component,
            self.session.resolve_path("logs", f"{component.lower()}/execution.log"),
        )
        return UnitContext(log=self.log, runner=self.runner, session=self.session,
                           dry_run=self.dry_run, timeout=self.timeout, abort=self.cancel)

    def _call_with_timeout(self, fn, ctx: UnitContext, what: str, grace: float = 0):
        """Run one unit invocation, giving up after the configured timeout.

        On timeout the unit's cancel flag is set so it stops at its next
        item boundary; the worker thread is not killed.  With *grace*, wait
        that long for the unit to reach the boundary and attach whatever it
        returned to the error as ``partial``.
        """
        if not self.timeout:
            return fn()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="winmaint-unit")
        future = pool.submit(fn)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            ctx.cancel.set()
            err = UnitTimeoutError(f"{what} exceeded {self.timeout}s")
            if grace:
                try:
                    err.partial = future.result(timeout=grace)
                except FutureTimeout:
                    self.log.warning("ORCHESTRATOR",
                                     f"{what} still running {grace}s after cancellation")
            raise err from None
        finally:
            pool.shutdown(wait=False)

    def _timeout_outcome(self, component: str, diff: DiffList, ctx: UnitContext,
                         err: UnitTimeoutError) -> ExecutionOutcome:
        """Outcome for an apply that overran, counting the work it really did."""
        if err.partial is not None:
            return replace(err.partial, success=False, error=str(err))
        # Unit never reached an item boundary: the item in flight counts as failed.
        detected = len(diff.adds)
        processed = min(ctx.progress.get("processed", 0), detected)
        return ExecutionOutcome(
            component=component, success=False,
            items_detected=detected, items_processed=processed,
            items_failed=detected - processed,
            duration_ms=int((self.timeout + self.cancel_grace) * 1000),
            dry_run=self.dry_run, error=str(err),
        )

    def _next_phase(self, phase: str) -> None:
        self._step += 1
        _section(PHASE_ICONS[phase], f"{phase.capitalize()} phase",
                 self._step, self._total)
        self.log.info("ORCHESTRATOR", f"Starting {phase} phase")

    def _end_phase(self, phase: str, ok: bool) -> None:
        status = "ok" if ok else "degraded"
        self.phase_status[phase] = status
        self.manifest.set_phase(phase, status)

    # ── confirmation ──────────────────────────────────────────────────────

    def _run_description(self) -> list:
        lines = []
        for component in self.components:
            cfg = self.component_config(component)
            if component == "BLOATWARE":
                lines.append(f"Remove Appx packages matching {len(cfg.get('deny', []))} "
                             f"deny pattern(s), keeping {len(cfg.get('allow', []))} allowed")
            elif component == "TELEMETRY":
                lines.append(f"Set start type of {len(cfg.get('desired', {}))} service(s)")
            elif component == "SYSTEM_OPTIMIZATION":
                lines.append(f"Bring {len(cfg.get('settings', {}))} registry setting(s) "
                             f"within tolerance")
            else:
                lines.append(f"Reconcile {COMPONENT_LABELS.get(component, component)}")
        lines.append(f"Create a restore point first (min {self.min_restore_gb} GB storage)")
        return lines

    def _confirm(self) -> None:
        """Describe the run and ask for confirmation; exit if declined.

        Skipped when --yes or --dry-run are active.
        """
        if self.yes or self.dry_run:
            return

        print()
        print(f"  {_C.BOLD}About to reconcile this machine:{_C.RESET}")
        for line in self._run_description():
            print(f"    • {line}")
        print()
        print(f"  {_C.DIM}Only items that differ from the target are changed.{_C.RESET}")
        print()
        try:
            answer = input("  Proceed? [y/N] ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            _info("Aborted.")
            sys.exit(0)

        if answer != "y":
            _info("Aborted.")
            sys.exit(0)

        print()

    # ── cancellation ──────────────────────────────────────────────────────

    def _install_signal_handler(self):
        if threading.current_thread() is not threading.main_thread():
            return None

        def handler(signum, frame):
            if self.cancel.is_set():
                raise KeyboardInterrupt
            self.cancel.set()
            _warn("Cancellation requested; finishing the current item "
                  "(press Ctrl+C again to force)")

        return signal.signal(signal.SIGINT, handler)

    @staticmethod
    def _restore_signal_handler(previous) -> None:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    # ── entry point ───────────────────────────────────────────────────────

    def run(self) -> int:
        self._t0 = time.monotonic()
        mode = "dry run" if self.dry_run else "apply"
        _banner(f"{_I.ROCKET}  winmaint — {mode}, "
                f"{len(self.components)} component(s)")

        self._confirm()

        try:
            self.session = open_session(self.base_dir, dry_run=self.dry_run)
        except SessionCreateError as exc:
            _error(str(exc))
            return EXIT_FATAL

        self.log = MaintenanceLog(self.session.resolve_path("logs", "maintenance.log"),
                                  quiet=self.quiet, verbose=self.verbose)
        self.manifest = SessionManifest(self.session)
        self.manifest.start()
        self.log.info("SESSION", f"Session {self.session.id} at {self.session.root}",
                      {"session": self.session.id, "dry_run": self.dry_run})
        for component in sorted(self.skip & set(self.registry)):
            self.log.info("ORCHESTRATOR", f"Skipping {component} (--skip)")
            self.manifest.record("components_skipped", component)

        previous = self._install_signal_handler()
        try:
            self.phase_inventory()
            self.phase_reconciliation()
            self.phase_reporting()
        finally:
            self._restore_signal_handler(previous)

        exit_code = self._exit_code()
        self.manifest.record("exit_code", exit_code)
        self.manifest.finish()

        keep = (self.keep_session or exit_code != EXIT_OK
                or any(s != "ok" for s in self.phase_status.values()))
        self.log.info("SESSION", "Retaining session directory" if keep
                      else "Removing session directory")
        self.log.close()
        removed = close_session(self.session, keep_artifacts=keep)
        self._print_summary(removed)
        return exit_code

    # ── phase 1: inventory ────────────────────────────────────────────────

    def phase_inventory(self) -> None:
        self._next_phase("inventory")
        if self.parallel_audits > 1 and len(self.components) > 1:
            # Audits are read-only, so they may overlap.
            with ThreadPoolExecutor(max_workers=self.parallel_audits,
                                    thread_name_prefix="winmaint-audit") as pool:
                list(pool.map(self._run_audit, self.components))
        else:
            for component in self.components:
                self._run_audit(component)
        self.manifest.save()
        self._end_phase("inventory",
                        all(c in self.audits for c in self.components))

    def _run_audit(self, component: str) -> None:
        if self.cancel.is_set():
            self.failures[component] = "cancelled before audit"
            self.log.warning(component, "Run cancelled; audit not started")
            return
        audit_cls, _ = self.registry[component]
        cfg = self.component_config(component)
        ctx = self._context(component)
        self.log.info(component, f"Auditing {COMPONENT_LABELS.get(component, component)}")
        try:
            result = self._call_with_timeout(
                lambda: audit_cls().inspect(cfg, ctx), ctx, f"{component} audit")
        except (AuditError, UnitTimeoutError) as exc:
            self.failures[component] = f"audit: {exc}"
            self.log.warning(component, f"Audit failed, skipping this component: {exc}")
            self.manifest.record("components_skipped", component)
            return
        except Exception as exc:
            self.failures[component] = f"audit crashed: {exc!r}"
            self.log.error(component, f"Audit crashed, skipping this component: {exc!r}")
            self.manifest.record("components_skipped", component)
            return

        self.audits[component] = result
        path = self.session.resolve_path("data", f"{component.lower()}-results.json")
        _write_json(path, result.to_dict())
        self.manifest.record("components_audited", component)
        self.log.info(component, f"Audit found {len(result.items)} item(s)",
                      {"items": len(result.items), "results": str(path)})

    # ── phase 2: reconciliation ───────────────────────────────────────────

    def phase_reconciliation(self) -> None:
        self._next_phase("reconciliation")
        pending = [c for c in self.components if c in self.audits]
        if not pending:
            self.log.warning("ORCHESTRATOR", "No component was audited; nothing to reconcile")
            self._end_phase("reconciliation", False)
            return

        for component in pending:
            self._compute_diff(component)

        if self.cancel.is_set():
            self.log.warning("RESTORE", "Run cancelled; restore point not created")
        elif any(not d.is_empty for d in self.diffs.values()):
            self._protect()
        else:
            self.log.info("RESTORE", "No changes pending; restore point not needed")

        for component in pending:
            if component not in self.diffs:
                continue
            if self.cancel.is_set():
                self.failures[component] = "cancelled before apply"
                self.log.warning("ORCHESTRATOR",
                                 f"Run cancelled; not starting {component}")
                continue
            self._apply(component)

        self.manifest.save()
        self._end_phase("reconciliation",
                        all(c in self.outcomes and self.outcomes[c].success
                            for c in self.components))

    def _compute_diff(self, component: str) -> None:
        _, unit_cls = self.registry[component]
        try:
            diff = compute_diff(self.audits[component], self.component_config(component),
                                unit_cls.diff_strategy)
        except DiffComputeError as exc:
            self.failures[component] = f"diff: {exc}"
            self.log.warning("DIFF", f"{component}: cannot compute diff, skipping apply: {exc}")
            return
        self.diffs[component] = diff
        path = self.session.resolve_path("temp", f"{component.lower()}-diff.json")
        path.write_text(diff.to_json(), encoding="utf-8")
        self.log.info("DIFF", f"{component}: {len(diff.adds)} item(s) to change",
                      {"component": component, "adds": list(diff.adds)})

    def _protect(self) -> None:
        self.safety_net = RestoreSafetyNet(
            self.runner, self.log,
            min_bytes=int(self.min_restore_gb * GB),
            dry_run=self.dry_run, timeout=self.timeout or None,
        )
        checkpoint = self.safety_net.protect(f"winmaint {self.session.id}")
        self.manifest.record("restore_state", self.safety_net.state)
        if checkpoint is not None:
            self.manifest.record("checkpoint", asdict(checkpoint))
        self.manifest.save()

    def _apply(self, component: str) -> None:
        _, unit_cls = self.registry[component]
        unit = unit_cls()
        diff = self.diffs[component]
        cfg = self.component_config(component)
        ctx = self._context(component)
        lock = self._resource_locks[unit.resource_class or component]

        with lock:
            try:
                outcome = self._call_with_timeout(
                    lambda: unit.apply_with_diff(cfg, diff, ctx), ctx, f"{component} apply",
                    grace=self.cancel_grace)
            except UnitTimeoutError as exc:
                self.log.error(component, str(exc))
                outcome = self._timeout_outcome(component, diff, ctx, exc)
            except Exception as exc:
                self.log.error(component, f"Unit crashed: {exc!r}")
                outcome = ExecutionOutcome(
                    component=component, success=False,
                    items_detected=len(diff.adds), items_failed=len(diff.adds),
                    dry_run=self.dry_run, error=repr(exc),
                )

        self.outcomes[component] = outcome
        _write_json(self.session.resolve_path("data", f"{component.lower()}-outcome.json"),
                    outcome.to_dict())
        self.manifest.record("components_applied", component)
        level = "SUCCESS" if outcome.success else "WARNING"
        self.log.log(level, component,
                     f"{outcome.items_processed}/{outcome.items_detected} processed, "
                     f"{outcome.items_failed} failed",
                     outcome.to_dict())

    # ── phase 3: reporting ────────────────────────────────────────────────

    def phase_reporting(self) -> None:
        self._next_phase("reporting")
        outcomes = load_outcomes(self.session, self.log)
        summary = process_logs(self.session.resolve_path("logs", "maintenance.log"),
                               outcomes, self.log)
        self.summary = summary
        _write_json(self.session.resolve_path("data", "log-summary.json"), summary.to_dict())

        renderer = ReportRenderer(self.session, self.log,
                                  template_path=self.config.get("report", {}).get("template"))
        net = self.safety_net
        try:
            self.report_path = renderer.render(
                summary, self.audits, self.diffs,
                checkpoint=net.checkpoint if net else None,
                restore_state=net.state if net else None,
            )
        except OSError as exc:
            self.log.warning("REPORT", f"Could not write report: {exc}")
            self._end_phase("reporting", False)
            return
        self.manifest.record("report", str(self.report_path))

        ok = True
        if self.report_dir is not None:
            self.exported_path = renderer.export(self.report_path, self.report_dir)
            ok = self.exported_path is not None
            self.manifest.record("report_exported",
                                 str(self.exported_path) if self.exported_path else None)
        self._end_phase("reporting", ok)

    # ── exit & summary ────────────────────────────────────────────────────

    def _exit_code(self) -> int:
        for component in self.components:
            outcome = self.outcomes.get(component)
            if outcome is None or not outcome.success:
                return EXIT_UNIT_FAILED
        return EXIT_OK

    def _print_summary(self, removed: bool) -> None:
        elapsed = time.monotonic() - self._t0
        m, s = divmod(int(elapsed), 60)
        mode = "dry run" if self.dry_run else "apply"
        _banner(f"{_I.CHECK}  winmaint complete ({mode}, {m}m {s:02d}s)")

        for component in self.registry:
            icon = COMPONENT_ICONS.get(component, _I.WRENCH)
            label = f"{COMPONENT_LABELS.get(component, component)}:"
            if component in self.skip:
                _skip(f"{icon}  {label} skipped")
                continue
            outcome = self.outcomes.get(component)
            if outcome is None:
                _warn(f"{icon}  {label} not applied "
                      f"({self.failures.get(component, 'no outcome')})")
                continue
            verb = "would change" if outcome.dry_run else "changed"
            parts = [f"{outcome.items_processed} {verb}"]
            if outcome.items_failed:
                parts.append(f"{outcome.items_failed} failed")
            if not outcome.items_detected:
                parts = ["already compliant"]
            line = f"{icon}  {label} {', '.join(parts)}"
            if outcome.success:
                _info(line)
            else:
                _warn(line)

        print()
        net = self.safety_net
        if net is not None:
            state = net.state if net.checkpoint is None else "restore point created"
            _info(f"{_I.SHIELD}  Restore:   {state}")
        if self.exported_path:
            _info(f"{_I.FILE}  Report:    {self.exported_path}")
        elif self.report_path:
            _info(f"{_I.FILE}  Report:    {self.report_path}")
        if removed:
            _info(f"{_I.FOLDER}  Session:   {self.session.id} (cleaned up)")
        else:
            _info(f"{_I.FOLDER}  Session:   {self.session.root} (kept)")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="winmaint",
        description="Audit, diff and apply maintenance on a Windows machine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  winmaint                              # full run (interactive confirm)
  winmaint -y                           # skip confirmation prompt
  winmaint --dry-run                    # audit + diff, report what would change
  winmaint --skip-telemetry             # everything except telemetry
  winmaint --config site.json           # override deny lists / thresholds
  winmaint --min-restore-gb 20          # demand more rollback storage
""",
    )
    p.add_argument(
        "--config", metavar="FILE",
        help="JSON file overriding the built-in per-component configuration",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="audit and diff, but only report what would change",
    )
    p.add_argument(
        "--min-restore-gb", type=float, default=DEFAULT_MIN_RESTORE_GB,
        help=f"minimum restore-point storage in GB (default {DEFAULT_MIN_RESTORE_GB})",
    )
    for component in COMPONENT_UNITS:
        flag = component.lower().replace("_", "-")
        p.add_argument(
            f"--skip-{flag}",
            dest=f"skip_{component.lower()}",
            action="store_true",
            help=f"skip the {COMPONENT_LABELS[component]} component",
        )
    p.add_argument(
        "--base-dir", default=str(DEFAULT_BASE_DIR),
        help=f"where session directories are created (default {DEFAULT_BASE_DIR})",
    )
    p.add_argument(
        "--report-dir", default=".",
        help="directory the final report is copied to (default: current directory)",
    )
    p.add_argument(
        "--timeout", type=float, default=DEFAULT_UNIT_TIMEOUT,
        help=f"seconds before a unit invocation counts as failed "
             f"(default {DEFAULT_UNIT_TIMEOUT}, 0 disables)",
    )
    p.add_argument(
        "--parallel-audits", type=int, default=1, metavar="N",
        help="run up to N read-only audits at once (default 1)",
    )
    p.add_argument(
        "--keep-session", action="store_true",
        help="keep the session directory even after a clean run",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="show only phase banners, warnings and errors",
    )
    p.add_argument(
        "--verbose", action="store_true",
        help="also echo DEBUG entries",
    )
    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.dry_run and not is_admin():
        _error("winmaint must run elevated (use an Administrator prompt, or --dry-run)")
        sys.exit(EXIT_FATAL)

    try:
        config = load_config(args.config)
    except ConfigLoadError as exc:
        _error(str(exc))
        sys.exit(EXIT_FATAL)

    skipped = [
        component for component in COMPONENT_UNITS
        if getattr(args, f"skip_{component.lower()}", False)
    ]

    run = MaintenanceRun(
        config,
        dry_run=args.dry_run,
        min_restore_gb=args.min_restore_gb,
        skip_components=skipped,
        base_dir=args.base_dir,
        report_dir=args.report_dir,
        timeout=args.timeout,
        parallel_audits=args.parallel_audits,
        keep_session=args.keep_session,
        yes=args.yes,
        quiet=args.quiet,
        verbose=args.verbose,
    )
    sys.exit(run.run())


if __name__ == "__main__":
    main()
