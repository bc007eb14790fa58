"""Shared test fixtures."""
import json
import subprocess
from pathlib import Path

import httpx
import pytest

import rsync_backup as rb


RSYNC_STATS = """\
Number of files: 12 (reg: 10, dir: 2)
Number of regular files transferred: 3
Total file size: 4,096 bytes
Total transferred file size: 1,024 bytes
sent 1,400 bytes  received 120 bytes  3,040.00 bytes/sec
"""


class FakeProcesses:
    """Stands in for subprocess.run; answers ssh probes and rsync by command name."""

    def __init__(self, events=None, ssh_rc=0, ls_rc=0, rsync_rc=0, rsync_output=RSYNC_STATS):
        self.events = events if events is not None else []
        self.ssh_rc = ssh_rc
        self.ls_rc = ls_rc
        self.rsync_rc = rsync_rc
        self.rsync_output = rsync_output
        self.calls = []

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] == "ssh":
            if "ls" in cmd:
                self.events.append("ssh ls")
                return subprocess.CompletedProcess(cmd, self.ls_rc, stdout="ls: cannot access" if self.ls_rc else "")
            self.events.append("ssh exit")
            return subprocess.CompletedProcess(cmd, self.ssh_rc, stdout="")
        if cmd[0] == "rsync":
            self.events.append("rsync")
            return subprocess.CompletedProcess(cmd, self.rsync_rc, stdout=self.rsync_output)
        raise AssertionError(f"unexpected command: {cmd}")

    @property
    def rsync_calls(self):
        return [c for c in self.calls if c[0] == "rsync"]


class FakeWebhook:
    """httpx.MockTransport handler; each entry in ``statuses`` answers one request."""

    def __init__(self, events=None, statuses=None):
        self.events = events if events is not None else []
        self.statuses = list(statuses or [])
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = json.loads(request.content)
        self.events.append(f"webhook {payload['embeds'][0]['title']}")
        status = self.statuses.pop(0) if self.statuses else 204
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    @property
    def payloads(self):
        return [json.loads(r.content) for r in self.requests]

    @property
    def titles(self):
        return [p["embeds"][0]["title"] for p in self.payloads]


@pytest.fixture
def source_dir(tmp_path) -> Path:
    src = tmp_path / "data"
    (src / "docs").mkdir(parents=True)
    (src / "docs" / "report.txt").write_text("quarterly numbers\n", encoding="utf-8")
    (src / "notes.md").write_text("# notes\n", encoding="utf-8")
    return src


@pytest.fixture
def log_file(tmp_path) -> Path:
    return tmp_path / "logs" / "backup.log"


@pytest.fixture
def make_config(source_dir, log_file):
    def _make(**overrides) -> rb.RunConfig:
        values = dict(
            webhook_url="https://discord.com/api/webhooks/123/abc",
            remote="backup@nas.local",
            source=str(source_dir),
            destination="/volume1/backups/data",
            name="Nightly data",
            port=2222,
            log_file=log_file,
            verbosity=rb.NORMAL,
        )
        values.update(overrides)
        return rb.RunConfig(**values)

    return _make


@pytest.fixture
def make_sink(log_file):
    sinks = []

    def _make(verbosity=rb.DEBUG, **kwargs) -> rb.LogSink:
        sink = rb.LogSink(log_file, verbosity, **kwargs)
        sinks.append(sink)
        return sink

    yield _make
    for sink in sinks:
        sink.close()


@pytest.fixture
def tools_on_path(monkeypatch):
    monkeypatch.setattr(rb.shutil, "which", lambda name: f"/usr/bin/{name}")


@pytest.fixture
def events():
    return []


@pytest.fixture
def processes(monkeypatch, events) -> FakeProcesses:
    fake = FakeProcesses(events=events)
    monkeypatch.setattr(rb.subprocess, "run", fake)
    return fake


@pytest.fixture
def webhook(events) -> FakeWebhook:
    return FakeWebhook(events=events)


@pytest.fixture
def sleeps():
    return []
