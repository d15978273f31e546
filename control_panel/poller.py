"""Desktop-side command poller.

One poller runs per device. Each cycle it walks the device's pending commands
oldest first, claims each one, runs the handler registered for its kind and
writes back ``executed`` or ``failed``, then heartbeats the device. Failed
commands are never retried; the dashboard issues a new one.

Run with ``python -m control_panel.poller --device-id <id>``.
"""

import argparse
import json
import logging
import os
import shlex
import signal
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as ExecutionTimeout
from typing import Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .commands import claim, fail_unclaimed, fetch_pending, report_status
from .db import get_session
from .errors import InvalidTransition, NotFound
from .liveness import heartbeat, mark_offline
from .models import Command, CommandStatus
from .settings import settings

log = logging.getLogger("poller")

Handler = Callable[[dict], None]


def shell_handler(command_line: str, timeout: float | None = None) -> Handler:
    """Handler that runs a shell command; the payload is passed as JSON in
    ``COMMAND_PAYLOAD``. A non-zero exit fails the command."""
    argv = shlex.split(command_line)

    def run(payload: dict) -> None:
        env = dict(os.environ, COMMAND_PAYLOAD=json.dumps(payload))
        subprocess.run(argv, check=True, timeout=timeout, env=env, capture_output=True)

    return run


def default_handlers() -> dict[str, Handler]:
    return {
        kind: shell_handler(line, timeout=settings.execution_timeout_seconds)
        for kind, line in settings.handler_commands().items()
    }


class CommandPoller:
    def __init__(self, device_id: str, handlers: dict[str, Handler] | None = None,
                 session_factory=get_session, interval_ms: int | None = None,
                 execution_timeout: float | None = None):
        self.device_id = device_id
        self.handlers = dict(handlers if handlers is not None else default_handlers())
        self.session_factory = session_factory
        self.interval = (interval_ms if interval_ms is not None else settings.poll_interval_ms) / 1000.0
        self.execution_timeout = (
            execution_timeout if execution_timeout is not None else settings.execution_timeout_seconds
        )
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def execute(self, cmd: Command) -> None:
        """Run the handler for ``cmd`` in a worker thread, bounded by the timeout."""
        handler = self.handlers[cmd.command_type]
        # a fresh worker per command so a hung handler cannot block the next one
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"exec-{cmd.id[:8]}")
        try:
            future = pool.submit(handler, dict(cmd.payload or {}))
            future.result(timeout=self.execution_timeout)
        finally:
            pool.shutdown(wait=False)

    def _report(self, session, command_id: str, status: CommandStatus) -> None:
        try:
            report_status(session, command_id, status.value)
        except NotFound:
            log.info("[POLL] command %s vanished before it could be marked %s", command_id, status.value)
        except InvalidTransition as e:
            log.warning("[POLL] command %s: %s", command_id, e)

    def process(self, session, cmd: Command) -> CommandStatus | None:
        """Claim and run one command. Returns the final status, or None when
        the command was not ours to run."""
        if cmd.command_type not in self.handlers:
            log.warning("[POLL] no handler for %s, failing command %s", cmd.command_type, cmd.id)
            if not fail_unclaimed(session, cmd.id):
                return None
            return CommandStatus.failed

        try:
            if not claim(session, cmd.id):
                return None
        except NotFound:
            log.info("[POLL] command %s disappeared before claim", cmd.id)
            return None

        log.info("[POLL] executing %s (%s)", cmd.command_type, cmd.id)
        try:
            self.execute(cmd)
        except ExecutionTimeout:
            log.error("[POLL] %s timed out after %ss", cmd.id, self.execution_timeout)
            outcome = CommandStatus.failed
        except Exception:
            log.exception("[POLL] %s failed", cmd.id)
            outcome = CommandStatus.failed
        else:
            outcome = CommandStatus.executed

        self._report(session, cmd.id, outcome)
        return outcome

    def run_once(self) -> list[tuple[str, CommandStatus | None]]:
        """One poll cycle. Returns (command id, outcome) in execution order."""
        results = []
        with self.session_factory() as session:
            pending = list(fetch_pending(session, self.device_id))
            for cmd in pending:
                if self.stopped:
                    break
                results.append((cmd.id, self.process(session, cmd)))
            heartbeat(session, self.device_id)
        return results

    def run_forever(self) -> None:
        log.info("[POLL] device %s polling every %.1fs", self.device_id, self.interval)
        try:
            while not self.stopped:
                try:
                    self.run_once()
                except NotFound:
                    log.error("[POLL] device %s no longer exists, stopping", self.device_id)
                    return
                except SQLAlchemyError as e:
                    log.warning("[POLL] cycle failed: %s", e)
                self._stop.wait(self.interval)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        try:
            with self.session_factory() as session:
                mark_offline(session, self.device_id)
        except NotFound:
            pass
        except SQLAlchemyError as e:
            log.warning("[POLL] could not mark %s offline: %s", self.device_id, e)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="control-panel-poller",
        description="Poll and execute dashboard commands for one device",
    )
    parser.add_argument("--device-id", required=True, help="Device to poll for")
    parser.add_argument("--interval-ms", type=int, default=settings.poll_interval_ms,
                        help="Delay between poll cycles")
    parser.add_argument("--timeout", type=float, default=settings.execution_timeout_seconds,
                        help="Seconds a command may run before it is marked failed")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    poller = CommandPoller(args.device_id, interval_ms=args.interval_ms, execution_timeout=args.timeout)
    if not poller.handlers:
        log.warning("[POLL] no HANDLER_* commands configured; every command will fail")

    def _on_signal(signum, _frame):
        log.info("[POLL] signal %s, shutting down", signum)
        poller.stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    poller.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
