"""Tests for the command helpers and the tmux client's command lines."""

import pytest

from orchestra.process import tmux as tmux_module
from orchestra.process.commands import CommandFailedError, CommandOutput, run_advisory, run_required
from orchestra.process.tmux import TmuxClient


def test_run_advisory_reports_failure(tmp_path):
    ok = run_advisory(["git", "--version"])
    assert ok.ok
    assert "git version" in ok.stdout

    failed = run_advisory(["git", "status"], cwd=tmp_path / "nowhere")
    assert not failed.ok

    missing = run_advisory(["definitely-not-a-command-xyz"])
    assert missing == CommandOutput(False, "", missing.stderr)


def test_run_required_raises_with_details(tmp_path):
    assert run_required(["git", "--version"]).startswith("git version")

    with pytest.raises(CommandFailedError) as excinfo:
        run_required(["git", "rev-parse", "HEAD"], cwd=tmp_path)

    assert excinfo.value.command == ["git", "rev-parse", "HEAD"]
    assert excinfo.value.returncode != 0
    assert excinfo.value.stderr

    with pytest.raises(CommandFailedError) as excinfo:
        run_required(["definitely-not-a-command-xyz"])
    assert excinfo.value.returncode is None


class RecordedCommands:
    def __init__(self, stdout: str = ""):
        self.stdout = stdout
        self.required: list[list[str]] = []
        self.advisory: list[list[str]] = []

    def run_required(self, args, cwd=None, timeout=30):
        self.required.append(list(args))
        return self.stdout

    def run_advisory(self, args, cwd=None, timeout=30):
        self.advisory.append(list(args))
        return CommandOutput(True, self.stdout, "")


@pytest.fixture
def recorded(monkeypatch):
    commands = RecordedCommands()
    monkeypatch.setattr(tmux_module, "run_required", commands.run_required)
    monkeypatch.setattr(tmux_module, "run_advisory", commands.run_advisory)
    return commands


def test_split_window_passes_cwd_env_and_shell(recorded):
    recorded.stdout = "%7\n"
    client = TmuxClient()

    pane_id = client.split_window(
        "agents", cwd="/work/agent-1", env={"AGENT_ID": "1", "AGENT_ROLE": "coder"}, shell="/bin/zsh"
    )

    assert pane_id == "%7"
    assert recorded.required == [[
        "tmux", "split-window", "-t", "agents", "-P", "-F", "#{pane_id}",
        "-c", "/work/agent-1",
        "-e", "AGENT_ID=1",
        "-e", "AGENT_ROLE=coder",
        "/bin/zsh",
    ]]


def test_session_and_keys(recorded):
    client = TmuxClient(binary="/usr/local/bin/tmux")

    client.new_session("agents", 200, 50)
    client.send_keys("%1", "claude --model opus")
    client.send_keys("%1", "q", enter=False)

    assert recorded.required == [
        ["/usr/local/bin/tmux", "new-session", "-d", "-s", "agents", "-x", "200", "-y", "50"],
        ["/usr/local/bin/tmux", "send-keys", "-t", "%1", "claude --model opus", "Enter"],
        ["/usr/local/bin/tmux", "send-keys", "-t", "%1", "q"],
    ]


def test_pane_pid_lookup(recorded):
    recorded.stdout = "%0 1200\n%3 4521\n%4 garbage\n"
    client = TmuxClient()

    assert client.pane_pid("%3") == 4521
    assert client.pane_pid("%4") == 0
    assert client.pane_pid("%9") == 0


def test_missing_binary_is_not_available():
    client = TmuxClient(binary="definitely-not-tmux-xyz")

    assert not client.is_available()
    assert not client.has_session("agents")
    assert client.capture_pane("%0") is None
