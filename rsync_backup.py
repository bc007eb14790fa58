# /rsync_backup.py
"""
Rsync Backup (one-shot)
- Mirrors a local source folder onto a remote destination with rsync over ssh.
- DESTRUCTIVE: rsync runs with --delete, so files on the destination that no
  longer exist in the source are removed.
- Preflight: required arguments, webhook URL, source folder, rsync/ssh on PATH,
  ssh reachability and remote destination (batch mode, 10s connect timeout).
- Posts start/success/failure embeds to a Discord-style webhook.
  3 attempts, 5s apart; a failed notification never fails the backup.
- Log file rotates at 100 MiB, keeping backup.log.1 .. backup.log.5.
- Styled console output:
  - errors red
  - backup start cyan, success green
  - debug lines dim
- Log file is always plain (no color codes).
- Exit codes: 0 ok, 2 configuration, 3 precondition, 4 connectivity,
  5 rsync failure, 130 interrupted.

Usage
  pip install httpx pathspec colorama
  python rsync_backup.py -w https://discord.com/api/webhooks/... -r backup@nas \
      -s /srv/data -d /volume1/backups/data -n "Nightly data" -v 1
  python rsync_backup.py --config /etc/rsync-backup/data.json --dry-run
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import json
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx
from colorama import Fore, Style, just_fix_windows_console
from pathspec import PathSpec

DEFAULT_LOG_FILE = Path("logs") / "backup.log"
DEFAULT_SSH_PORT = 22

MAX_LOG_BYTES = 100 * 1024 * 1024
LOG_BACKUP_COUNT = 5

SSH_CONNECT_TIMEOUT = 10
RSYNC_IO_TIMEOUT = 60
REQUIRED_TOOLS = ("rsync", "ssh")

NOTIFY_ATTEMPTS = 3
NOTIFY_RETRY_DELAY = 5.0
NOTIFY_TIMEOUT = 30.0
NOTIFY_OK_STATUSES = (200, 204)

# Webhook messages are capped at 2000 characters, a single field value at 1024.
MAX_BODY_CHARS = 950
TRUNCATION_MARKER = "\n... (truncated)"
HEAD_TRUNCATION_MARKER = "(truncated) ...\n"

BOT_NAME = "Backup Bot"
BOT_AVATAR_URL = "https://cdn-icons-png.flaticon.com/512/2889/2889676.png"

WEBHOOK_ENV = "BACKUP_WEBHOOK_URL"
INTERRUPTED_MESSAGE = "Backup interrupted"

# Verbosity levels, as given to -v and LogSink.log().
ERROR = 0
NORMAL = 1
DEBUG = 2

NORMAL_LEVELNO = 25
logging.addLevelName(NORMAL_LEVELNO, "NORMAL")

_LOGGING_LEVELS = {
    ERROR: logging.ERROR,
    NORMAL: NORMAL_LEVELNO,
    DEBUG: logging.DEBUG,
}


# -------------------------
# Errors
# -------------------------

class BackupError(Exception):
    """Base for everything that ends a run. ``exit_code`` is what main() returns."""

    exit_code = 1


class ConfigurationError(BackupError):
    exit_code = 2


class MissingArgument(ConfigurationError):
    pass


class InvalidURL(ConfigurationError):
    pass


class PreconditionError(BackupError):
    exit_code = 3


class SourceNotFound(PreconditionError):
    pass


class SourceUnreadable(PreconditionError):
    pass


class MissingDependency(PreconditionError):
    pass


class ConnectivityError(BackupError):
    exit_code = 4


class UnreachableHost(ConnectivityError):
    pass


class DestinationNotFound(ConnectivityError):
    pass


class SyncError(BackupError):
    exit_code = 5

    def __init__(self, outcome: SyncOutcome):
        super().__init__(f"rsync failed with exit code {outcome.returncode}")
        self.outcome = outcome


class DeliveryError(BackupError):
    """A single failed webhook attempt. Notifier.send() never lets it escape."""


class BackupInterrupted(BackupError):
    exit_code = 130


# -------------------------
# Console styling
# -------------------------

class Event(enum.Enum):
    """Lifecycle events: notification title, embed color and status text."""

    START = ("Backup Started", 0x3498DB, "In progress")
    SUCCESS = ("Backup Completed", 0x2ECC71, "Success")
    FAILURE = ("Backup Failed", 0xE74C3C, "Failed")

    def __init__(self, title: str, color: int, status: str):
        self.title = title
        self.color = color
        self.status = status


EVENT_COLORS = {
    Event.START: Fore.CYAN,
    Event.SUCCESS: Fore.GREEN,
    Event.FAILURE: Fore.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Fore.RED}{base}{Style.RESET_ALL}"

        event = getattr(record, "event", None)
        if event in EVENT_COLORS:
            return f"{EVENT_COLORS[event]}{base}{Style.RESET_ALL}"

        if record.levelno <= logging.DEBUG:
            return f"{Style.DIM}{base}{Style.RESET_ALL}"

        return base


# -------------------------
# Log sink
# -------------------------

class SizeRotatingFileHandler(logging.FileHandler):
    """
    FileHandler with an explicit size check.

    logging.handlers.RotatingFileHandler only rotates from emit(), i.e. for
    records that passed level filtering. Here the owner calls
    rotate_if_needed() itself, once per log call, emitted or not.
    """

    def __init__(self, filename: Path, max_bytes: int, backup_count: int):
        super().__init__(filename, mode="a", encoding="utf-8", delay=True)
        self.max_bytes = max_bytes
        self.backup_count = backup_count

    def _open(self):
        Path(self.baseFilename).parent.mkdir(parents=True, exist_ok=True)
        return super()._open()

    def rotated_name(self, index: int) -> str:
        return f"{self.baseFilename}.{index}"

    def should_rotate(self) -> bool:
        try:
            return os.path.getsize(self.baseFilename) >= self.max_bytes
        except FileNotFoundError:
            return False

    def rotate(self) -> None:
        self.acquire()
        try:
            if self.stream:
                self.stream.close()
                self.stream = None

            if self.backup_count > 0:
                oldest = self.rotated_name(self.backup_count)
                if os.path.exists(oldest):
                    os.remove(oldest)
                for i in range(self.backup_count - 1, 0, -1):
                    src = self.rotated_name(i)
                    if os.path.exists(src):
                        os.rename(src, self.rotated_name(i + 1))
                os.rename(self.baseFilename, self.rotated_name(1))
            else:
                os.remove(self.baseFilename)

            # mode "a" on a missing file leaves a fresh, empty active log
            self.stream = self._open()
        finally:
            self.release()

    def rotate_if_needed(self) -> bool:
        if not self.should_rotate():
            return False
        self.rotate()
        return True

    def write_raw(self, text: str) -> None:
        self.acquire()
        try:
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(text)
            self.flush()
        finally:
            self.release()


class LogSink:
    """
    Leveled log shared by every stage of a run.

    Each log() call is one locked sequence: rotate the file if it reached
    max_bytes, then write the line to the file and stdout when
    ``level <= verbosity``. Nothing touches the disk before the first
    written line or rotation.
    """

    def __init__(
        self,
        log_file: Path,
        verbosity: int = ERROR,
        max_bytes: int = MAX_LOG_BYTES,
        backup_count: int = LOG_BACKUP_COUNT,
        stream=None,
    ):
        self.log_file = Path(log_file)
        self.verbosity = verbosity
        self._guard = threading.Lock()

        stream = stream if stream is not None else sys.stdout
        just_fix_windows_console()

        fmt = "%(asctime)s - %(levelname)s - %(message)s"
        datefmt = "%Y-%m-%d %H:%M:%S"

        self.file_handler = SizeRotatingFileHandler(self.log_file, max_bytes, backup_count)
        self.file_handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))

        ch = logging.StreamHandler(stream)
        ch.setFormatter(ColorizingFormatter(use_color=_supports_color(stream), fmt=fmt, datefmt=datefmt))

        self._logger = logging.getLogger("rsync_backup")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        # one run per process; a new sink replaces the previous one's handlers
        for old in list(self._logger.handlers):
            self._logger.removeHandler(old)
            old.close()
        self._logger.addHandler(self.file_handler)
        self._logger.addHandler(ch)

    def log(self, message: str, level: int = NORMAL, event: Optional[Event] = None) -> None:
        with self._guard:
            self.file_handler.rotate_if_needed()
            if level > self.verbosity:
                return
            extra = {"event": event} if event is not None else {}
            self._logger.log(_LOGGING_LEVELS[level], message, extra=extra)

    def end_run(self) -> None:
        """Append the blank line that closes a run in the log file."""
        with self._guard:
            self.file_handler.write_raw("\n")

    def close(self) -> None:
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class RunConfig:
    webhook_url: str = ""
    remote: str = ""
    source: str = ""
    destination: str = ""
    name: str = ""
    port: int = DEFAULT_SSH_PORT
    log_file: Path = DEFAULT_LOG_FILE
    verbosity: int = ERROR
    excludes: tuple[str, ...] = ()
    dry_run: bool = False

    @property
    def source_path(self) -> Path:
        return Path(self.source).expanduser()

    @property
    def target(self) -> str:
        return f"{self.remote}:{self.destination}"


REQUIRED_FIELDS = (
    ("webhook_url", "webhook URL (-w)"),
    ("remote", "remote host (-r)"),
    ("source", "source path (-s)"),
    ("destination", "destination path (-d)"),
    ("name", "backup name (-n)"),
)

CONFIG_KEYS = {
    "webhook",
    "remote",
    "source",
    "destination",
    "name",
    "port",
    "log_file",
    "verbosity",
    "exclude",
    "dry_run",
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a local folder to a remote host with rsync over ssh and report to a webhook. "
        "Files on the destination that are missing from the source are DELETED."
    )
    p.add_argument("-w", "--webhook", type=str, default=None, help=f"Webhook URL (default: ${WEBHOOK_ENV}).")
    p.add_argument("-r", "--remote", type=str, default=None, help="Remote endpoint, user@host.")
    p.add_argument("-s", "--source", type=str, default=None, help="Local folder to back up.")
    p.add_argument("-d", "--destination", type=str, default=None, help="Folder on the remote host (must exist).")
    p.add_argument("-n", "--name", type=str, default=None, help="Backup name shown in notifications.")
    p.add_argument("-p", "--port", type=int, default=None, help=f"SSH port (default: {DEFAULT_SSH_PORT}).")
    p.add_argument("-l", "--log-file", type=str, default=None, help=f"Log file (default: ./{DEFAULT_LOG_FILE}).")
    p.add_argument(
        "-v",
        "--verbosity",
        type=int,
        choices=(ERROR, NORMAL, DEBUG),
        default=None,
        help="0 = errors only (default), 1 = normal, 2 = debug.",
    )
    p.add_argument(
        "-e",
        "--exclude",
        action="append",
        default=None,
        help="Exclude pattern passed to rsync (gitignore style). Repeatable.",
    )
    p.add_argument("--dry-run", action="store_true", help="Run rsync with --dry-run; nothing is transferred or deleted.")
    p.add_argument("-c", "--config", type=str, default=None, help="JSON file with any of the options above.")
    return p


def load_config_file(path: Optional[Path]) -> dict:
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}") from None
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a JSON object: {path}")
    unknown = set(data) - CONFIG_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown keys in config file {path}: {', '.join(sorted(unknown))}")
    return data


def _as_int(value, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}") from None


def _as_str(value, label: str) -> str:
    # null in the config file means "not set"
    if value is None:
        return ""
    if not isinstance(value, (str, Path)):
        raise ConfigurationError(f"{label} must be a string, got {value!r}")
    return str(value).strip()


def _as_patterns(value) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(p, str) for p in value):
        return tuple(value)
    raise ConfigurationError(f"exclude must be a string or a list of strings, got {value!r}")


def build_config(args: argparse.Namespace, environ=None) -> RunConfig:
    """Merge CLI flags, environment and config file (in that order of precedence)."""
    environ = os.environ if environ is None else environ
    saved = load_config_file(Path(args.config).expanduser() if args.config else None)

    def pick(key: str, default=None):
        value = getattr(args, key)
        if value is not None:
            return value
        return saved.get(key, default)

    webhook = args.webhook or environ.get(WEBHOOK_ENV) or saved.get("webhook", "")
    port = _as_int(pick("port", DEFAULT_SSH_PORT), "port")
    verbosity = _as_int(pick("verbosity", ERROR), "verbosity")
    if verbosity not in (ERROR, NORMAL, DEBUG):
        raise ConfigurationError(f"verbosity must be 0, 1 or 2, got {verbosity}")

    log_file = _as_str(pick("log_file", DEFAULT_LOG_FILE), "log_file") or str(DEFAULT_LOG_FILE)

    return RunConfig(
        webhook_url=_as_str(webhook, "webhook"),
        remote=_as_str(pick("remote"), "remote"),
        source=_as_str(pick("source"), "source"),
        destination=_as_str(pick("destination"), "destination"),
        name=_as_str(pick("name"), "name"),
        port=port,
        log_file=Path(log_file).expanduser(),
        verbosity=verbosity,
        excludes=_as_patterns(pick("exclude")),
        dry_run=bool(args.dry_run or saved.get("dry_run", False)),
    )


# -------------------------
# Preflight
# -------------------------

URL_RE = re.compile(r"^https?://\S+$")


def compile_excludes(patterns) -> PathSpec:
    return PathSpec.from_lines("gitwildmatch", patterns)


def validate(config: RunConfig) -> None:
    """
    Check everything that can be checked locally, stopping at the first problem.

    Order: required fields, webhook URL, port/excludes, source folder exists,
    source folder readable, rsync and ssh on PATH. Nothing here writes to disk
    or talks to the network.
    """
    missing = [label for attr, label in REQUIRED_FIELDS if not str(getattr(config, attr)).strip()]
    if missing:
        raise MissingArgument(f"Missing required argument(s): {', '.join(missing)}")

    if not URL_RE.match(config.webhook_url):
        raise InvalidURL(f"Webhook URL must start with http:// or https://: {config.webhook_url}")

    if not 1 <= config.port <= 65535:
        raise ConfigurationError(f"SSH port out of range: {config.port}")

    try:
        compile_excludes(config.excludes)
    except ValueError as e:
        raise ConfigurationError(f"Invalid exclude pattern: {e}") from e

    source = config.source_path
    if not source.is_dir():
        raise SourceNotFound(f"Source directory does not exist: {source}")
    if not os.access(source, os.R_OK | os.X_OK):
        raise SourceUnreadable(f"Source directory is not readable: {source}")

    missing_tools = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    if missing_tools:
        raise MissingDependency(f"Required tool(s) not found on PATH: {', '.join(missing_tools)}")


# -------------------------
# SSH connectivity
# -------------------------

def ssh_options(config: RunConfig) -> list[str]:
    return [
        "-p",
        str(config.port),
        "-o",
        f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        "-o",
        "BatchMode=yes",
    ]


def ssh_command(config: RunConfig, *remote_args: str) -> list[str]:
    return ["ssh", *ssh_options(config), config.remote, *remote_args]


def remote_path_arg(path: str) -> str:
    """Quote a path for the remote shell, leaving a leading ~/ to expand there."""
    if path == "~":
        return path
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def _run_captured(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )


def check_ssh(config: RunConfig, sink: LogSink) -> None:
    sink.log(f"Checking SSH connection to {config.remote} (port {config.port})", NORMAL)

    probe = _run_captured(ssh_command(config, "exit"))
    if probe.returncode != 0:
        sink.log(f"ssh probe exited {probe.returncode}: {(probe.stdout or '').strip()}", DEBUG)
        raise UnreachableHost(f"Cannot connect to {config.remote} on port {config.port}")

    # ssh joins remote arguments into one shell command line
    listing = _run_captured(ssh_command(config, "ls", remote_path_arg(config.destination)))
    if listing.returncode != 0:
        sink.log(f"remote ls exited {listing.returncode}: {(listing.stdout or '').strip()}", DEBUG)
        raise DestinationNotFound(f"Destination directory does not exist on {config.remote}: {config.destination}")

    sink.log("SSH connection OK, destination exists", DEBUG)


# -------------------------
# Rsync
# -------------------------

STATS_KEYS = (
    "Number of files",
    "Number of regular files transferred",
    "Total file size",
    "Total transferred file size",
)


@dataclass(frozen=True)
class SyncOutcome:
    returncode: int
    output: str
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    def stats(self) -> dict[str, str]:
        """Pick the interesting lines out of rsync's --stats summary."""
        found = {}
        for line in self.output.splitlines():
            key, sep, value = line.strip().partition(":")
            if sep and key in STATS_KEYS:
                found[key] = value.strip()
        return found


def rsync_command(config: RunConfig) -> list[str]:
    cmd = [
        "rsync",
        "-az",
        "--delete",
        f"--timeout={RSYNC_IO_TIMEOUT}",
        "--stats",
        "-e",
        shlex.join(["ssh", *ssh_options(config)]),
    ]
    cmd.extend(f"--exclude={pattern}" for pattern in config.excludes)
    if config.dry_run:
        cmd.append("--dry-run")
    if config.verbosity >= DEBUG:
        cmd.append("--verbose")

    # trailing slash = copy contents, not the directory itself
    cmd.append(str(config.source_path).rstrip("/") + "/")
    cmd.append(config.target)
    return cmd


def run_sync(config: RunConfig, sink: LogSink) -> SyncOutcome:
    if config.excludes and sink.verbosity >= DEBUG:
        excluded = sum(1 for _ in compile_excludes(config.excludes).match_tree_files(str(config.source_path)))
        sink.log(f"{excluded} local file(s) match {len(config.excludes)} exclude pattern(s)", DEBUG)

    cmd = rsync_command(config)
    sink.log(f"Running: {shlex.join(cmd)}", DEBUG)

    start = time.monotonic()
    result = _run_captured(cmd)
    outcome = SyncOutcome(
        returncode=result.returncode,
        output=result.stdout or "",
        duration=time.monotonic() - start,
    )

    for line in outcome.output.splitlines():
        sink.log(f"rsync: {line}", DEBUG)
    return outcome


def format_duration(seconds: float) -> str:
    return str(dt.timedelta(seconds=round(seconds)))


# -------------------------
# Notifications
# -------------------------

def truncate(text: str, limit: int = MAX_BODY_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def keep_tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return HEAD_TRUNCATION_MARKER + text[len(text) - limit:]


def failure_report(headline: str, output: str) -> str:
    """
    Headline plus as much of the end of rsync's output as fits in one body.

    rsync prints its error summary last, so the tail is kept, not the head.
    """
    budget = max(0, MAX_BODY_CHARS - len(headline) - 1 - len(HEAD_TRUNCATION_MARKER))
    return f"{headline}\n{keep_tail(output, budget)}"


@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str
    inline: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "value": self.value, "inline": self.inline}


@dataclass(frozen=True)
class Notification:
    title: str
    color: int
    description: str
    fields: tuple[EmbedField, ...]
    author: str = ""
    username: str = BOT_NAME

    def to_payload(self) -> dict:
        embed = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
            "fields": [f.to_dict() for f in self.fields],
            "thumbnail": {"url": BOT_AVATAR_URL},
            "footer": {"text": BOT_NAME},
        }
        if self.author:
            embed["author"] = {"name": self.author}
        return {"username": self.username, "embeds": [embed]}


def _code_block(text: str) -> str:
    return f"```\n{truncate(text) or '(no output)'}\n```"


def build_notification(
    config: RunConfig,
    event: Event,
    body: Optional[str] = None,
    duration: Optional[float] = None,
    when: Optional[dt.datetime] = None,
) -> Notification:
    when = when or dt.datetime.now()
    prefix = "[DRY RUN] " if config.dry_run else ""

    descriptions = {
        Event.START: f"Backup **{config.name}** has started.",
        Event.SUCCESS: f"Backup **{config.name}** finished successfully.",
        Event.FAILURE: f"Backup **{config.name}** failed.",
    }

    fields = [
        EmbedField("Source", f"`{config.source}`", inline=True),
        EmbedField("Destination", f"`{config.target}`", inline=True),
        EmbedField("Status", event.status, inline=True),
    ]
    if duration is not None:
        fields.append(EmbedField("Duration", format_duration(duration), inline=True))
    if body is not None:
        fields.append(EmbedField("Error" if event is Event.FAILURE else "Output", _code_block(body)))
    fields.append(EmbedField("Timestamp", when.strftime("%Y-%m-%d %H:%M:%S")))

    return Notification(
        title=prefix + event.title,
        color=event.color,
        description=descriptions[event],
        fields=tuple(fields),
        author=config.name,
    )


class Notifier:
    """
    Best-effort webhook reporting.

    send() makes up to ``attempts`` POSTs with a fixed ``retry_delay`` between
    them, and only reports failure through its return value and the log.
    """

    def __init__(
        self,
        config: RunConfig,
        sink: LogSink,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        attempts: int = NOTIFY_ATTEMPTS,
        retry_delay: float = NOTIFY_RETRY_DELAY,
    ):
        self.config = config
        self.sink = sink
        self.client = client if client is not None else httpx.Client(timeout=NOTIFY_TIMEOUT)
        self.sleep = sleep
        self.attempts = attempts
        self.retry_delay = retry_delay

    def notify_start(self) -> bool:
        return self.send(build_notification(self.config, Event.START))

    def notify_success(self, output: str, duration: Optional[float] = None) -> bool:
        return self.send(build_notification(self.config, Event.SUCCESS, body=output, duration=duration))

    def notify_error(self, message: str) -> bool:
        return self.send(build_notification(self.config, Event.FAILURE, body=message))

    def send(self, notification: Notification) -> bool:
        payload = notification.to_payload()
        for attempt in range(1, self.attempts + 1):
            try:
                self._post(payload)
                self.sink.log(f"Notification sent: {notification.title}", DEBUG)
                return True
            except DeliveryError as e:
                self.sink.log(f"Notification attempt {attempt}/{self.attempts} failed: {e}", DEBUG)
            if attempt < self.attempts:
                self.sleep(self.retry_delay)

        self.sink.log(
            f"Failed to send notification '{notification.title}' after {self.attempts} attempts",
            ERROR,
        )
        return False

    def _post(self, payload: dict) -> None:
        try:
            response = self.client.post(self.config.webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        self.sink.log(f"Webhook responded {response.status_code}: {response.text.strip()}", DEBUG)
        if response.status_code not in NOTIFY_OK_STATUSES:
            raise DeliveryError(f"HTTP {response.status_code}")

    def close(self) -> None:
        self.client.close()


# -------------------------
# Lifecycle
# -------------------------

class RunState(enum.Enum):
    START = "start"
    VALIDATED = "validated"
    CONNECTED = "connected"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DONE = "done"


class BackupRun:
    """
    One backup, start to finish:
    START -> VALIDATED -> CONNECTED -> RUNNING -> SUCCEEDED | FAILED -> DONE.

    Failures are raised as BackupError subclasses for main() to turn into an
    exit code. Connectivity and rsync failures are notified first; validation
    failures are not, and leave no trace on disk.
    """

    def __init__(self, config: RunConfig, sink: LogSink, notifier: Notifier):
        self.config = config
        self.sink = sink
        self.notifier = notifier
        self.state = RunState.START
        self.outcome: Optional[SyncOutcome] = None

    def _advance(self, state: RunState) -> None:
        self.sink.log(f"State {self.state.name} -> {state.name}", DEBUG)
        self.state = state

    def execute(self) -> SyncOutcome:
        try:
            validate(self.config)
            self._advance(RunState.VALIDATED)

            self._connect()
            self._advance(RunState.CONNECTED)

            return self._sync()
        except (KeyboardInterrupt, BackupInterrupted):
            # logged before the DONE marker so the blank line stays last
            self.sink.log(INTERRUPTED_MESSAGE, ERROR)
            raise BackupInterrupted(INTERRUPTED_MESSAGE) from None
        finally:
            if self.state is not RunState.START:
                self._advance(RunState.DONE)
                self.sink.end_run()

    def _connect(self) -> None:
        try:
            check_ssh(self.config, self.sink)
        except ConnectivityError as e:
            self.sink.log(str(e), ERROR, event=Event.FAILURE)
            self.notifier.notify_error(str(e))
            raise

    def _sync(self) -> SyncOutcome:
        cfg = self.config
        self._advance(RunState.RUNNING)
        mode = " (dry run)" if cfg.dry_run else ""
        self.sink.log(f"Starting backup '{cfg.name}'{mode}: {cfg.source_path} -> {cfg.target}", NORMAL, event=Event.START)
        self.notifier.notify_start()

        outcome = run_sync(cfg, self.sink)
        self.outcome = outcome

        if not outcome.succeeded:
            self._advance(RunState.FAILED)
            error = SyncError(outcome)
            self.sink.log(str(error), ERROR, event=Event.FAILURE)
            self.notifier.notify_error(failure_report(str(error), outcome.output))
            raise error

        self._advance(RunState.SUCCEEDED)
        self.sink.log("Backup completed successfully", NORMAL, event=Event.SUCCESS)
        stats = outcome.stats()
        if stats:
            summary = ", ".join(f"{key}: {value}" for key, value in stats.items())
            self.sink.log(f"rsync stats: {summary}", NORMAL)
        self.sink.log(f"Duration: {format_duration(outcome.duration)}", NORMAL)
        self.notifier.notify_success(outcome.output, duration=outcome.duration)
        return outcome


# -------------------------
# Main
# -------------------------

def _raise_interrupted(signum, frame) -> None:
    raise BackupInterrupted(INTERRUPTED_MESSAGE)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e}")
        return e.exit_code

    sink = LogSink(cfg.log_file, cfg.verbosity)
    notifier = Notifier(cfg, sink)
    previous_sigterm = signal.signal(signal.SIGTERM, _raise_interrupted)

    try:
        BackupRun(cfg, sink, notifier).execute()
    except (ConfigurationError, PreconditionError) as e:
        # the log sink is not trusted yet; report straight to stdout
        if isinstance(e, MissingArgument):
            parser.print_usage(sys.stdout)
        print(f"Error: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        sink.log(INTERRUPTED_MESSAGE, ERROR)
        return BackupInterrupted.exit_code
    except BackupError as e:
        # already logged (and notified where it applies) by BackupRun
        return e.exit_code
    finally:
        signal.signal(signal.SIGTERM, previous_sigterm)
        notifier.close()
        sink.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
