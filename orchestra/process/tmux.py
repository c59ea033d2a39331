"""Thin tmux client used by the PTY manager."""

import logging
import shutil
from typing import Optional

from orchestra.process.commands import run_advisory, run_required

logger = logging.getLogger(__name__)


class TmuxClient:
    """
    Wraps the tmux commands needed to host agent processes.

    Session creation, pane creation and send-keys are load-bearing and raise
    CommandFailedError; layout, kill and status calls are advisory.
    """

    def __init__(self, binary: str = "tmux"):
        self.binary = binary

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def has_session(self, session: str) -> bool:
        return run_advisory([self.binary, "has-session", "-t", session]).ok

    def new_session(self, session: str, cols: int, rows: int) -> None:
        run_required([
            self.binary, "new-session", "-d", "-s", session, "-x", str(cols), "-y", str(rows)
        ])
        logger.info(f"Created tmux session {session} ({cols}x{rows})")

    def split_window(
        self,
        session: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        shell: Optional[str] = None
    ) -> str:
        """
        Open a new pane in the session.

        Args:
            session: Target session
            cwd: Start directory of the pane
            env: Extra environment for the pane's shell
            shell: Command the pane runs (default: tmux's default shell)

        Returns:
            Pane id (e.g. "%3")
        """
        args = [self.binary, "split-window", "-t", session, "-P", "-F", "#{pane_id}"]
        if cwd:
            args += ["-c", cwd]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        if shell:
            args.append(shell)

        return run_required(args).strip()

    def select_layout(self, session: str, layout: str = "tiled") -> None:
        run_advisory([self.binary, "select-layout", "-t", session, layout])

    def send_keys(self, pane_id: str, keys: str, enter: bool = True) -> None:
        args = [self.binary, "send-keys", "-t", pane_id, keys]
        if enter:
            args.append("Enter")
        run_required(args)

    def pane_pid(self, pane_id: str) -> int:
        """PID of the pane's foreground process, 0 if it cannot be resolved."""
        output = run_advisory([self.binary, "list-panes", "-a", "-F", "#{pane_id} #{pane_pid}"])
        if not output.ok:
            return 0

        for line in output.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[0] == pane_id and parts[1].isdigit():
                return int(parts[1])
        return 0

    def capture_pane(self, pane_id: str) -> Optional[str]:
        """Pane contents, or None if the pane does not answer."""
        output = run_advisory([self.binary, "capture-pane", "-t", pane_id, "-p"])
        return output.stdout if output.ok else None

    def kill_pane(self, pane_id: str) -> None:
        run_advisory([self.binary, "kill-pane", "-t", pane_id])

    def kill_session(self, session: str) -> None:
        if run_advisory([self.binary, "kill-session", "-t", session]).ok:
            logger.info(f"Killed tmux session {session}")
