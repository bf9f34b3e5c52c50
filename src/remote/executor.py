"""Ledger-recording command runner.

Every command run on behalf of a sandbox or release goes through
RemoteExecutor.run(), which records an Execution, streams each output line
into the ledger and the event sink, and stores the exit code on completion.

Secret values passed to run() are masked in the recorded command, its
output lines and raised errors. Commands that read a secret can skip
recording their output altogether.
"""

import base64
import logging
import time
from typing import Iterable, Optional

from events import EventSink, NullEventSink
from remote.ssh import CommandError, SSHError
from state.models import Execution
from state.store import Owner, Store

logger = logging.getLogger(__name__)

REDACTED = '[REDACTED]'


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    """Mask every secret, and its base64 form, in text."""
    for secret in secrets:
        if not secret:
            continue
        encoded = base64.b64encode(secret.encode()).decode()
        text = text.replace(secret, REDACTED).replace(encoded, REDACTED)
    return text


class RemoteExecutor:
    """Run commands for one owner over a transport, recording the ledger.

    Args:
        owner: Sandbox or Release the executions belong to
        store: Ledger store
        transport: Object with execute(command, timeout, raise_on_error, on_line)
        events: Progress sink
    """

    def __init__(self, owner: Owner, store: Store, transport=None, events: Optional[EventSink] = None):
        self.owner = owner
        self.store = store
        self.transport = transport
        self.events = events or NullEventSink()

    def log_step(self, category: str) -> Execution:
        """Record a step marker and announce it."""
        execution = self.store.create_execution(
            self.owner.ref, command=category, kind='exec', category=category,
        )
        self.events.on_step_started(self.owner, execution)
        return execution

    def record_process(self, command: str, tag: str, image: Optional[str] = None,
                       container_id: Optional[str] = None) -> Execution:
        """Record a long-running process started outside run()."""
        return self.store.create_execution(
            self.owner.ref, command=command, kind='process', tag=tag,
            image=image, container_id=container_id, started_at=time.time(),
        )

    def store_output(self, execution: Execution, content: str, stream: str = 'output') -> None:
        """Append content to the ledger, numbering after existing lines.

        Blank lines are skipped; line numbers keep their position so a
        retried append of the same content collides and is ignored.
        """
        if not content or not content.strip():
            return
        base_line = self.store.max_line_number(execution.id, stream)
        for idx, line in enumerate(content.split('\n')):
            if not line.strip():
                continue
            if self.store.append_log_line(execution.id, stream, base_line + idx + 1, line):
                self.events.on_log_line(self.owner, execution, line)

    def run(
        self,
        command: str,
        timeout: int = 300,
        raise_on_error: bool = True,
        category: Optional[str] = None,
        tag: Optional[str] = None,
        session: Optional[str] = None,
        secrets: Iterable[Optional[str]] = (),
        record_output: bool = True,
        record_as: Optional[str] = None,
    ) -> Execution:
        """Run command remotely and record it.

        Args:
            secrets: Values masked wherever the command or its output is recorded
            record_output: When False, output is returned on the Execution but
                never written to the ledger or the event sink
            record_as: Command text to record instead of command

        Returns:
            The completed Execution (output, exit_code, success)

        Raises:
            SSHError: Transport failure, or CommandError on non-zero exit, when raise_on_error
        """
        if self.transport is None:
            raise SSHError(f"No SSH connection available for {self.owner.ref}")

        secrets = tuple(secrets)
        recorded = redact(record_as if record_as is not None else command, secrets)
        execution = self.store.create_execution(
            self.owner.ref, command=recorded, kind='exec',
            category=category, tag=tag, session=session,
        )
        self.store.update_execution(execution, started_at=time.time())

        def on_line(line: str) -> None:
            if record_output:
                self.store_output(execution, redact(line, secrets))

        try:
            result = self.transport.execute(
                command,
                timeout=timeout,
                raise_on_error=False,
                on_line=on_line,
            )
            self.store.update_execution(execution, exit_code=result.exit_code, finished_at=time.time())
            if record_output:
                execution.output = self.store.output(execution.id)
            else:
                execution.output = result.output

            if raise_on_error and result.exit_code != 0:
                raise CommandError(
                    f"Command failed with exit code {result.exit_code}: {recorded}",
                    exit_code=result.exit_code,
                    output=redact(result.output, secrets) if record_output else '',
                )
            return execution
        except SSHError as e:
            if execution.finished_at is None:
                code = getattr(e, 'exit_code', None)
                self.store.update_execution(
                    execution, exit_code=code if code is not None else -1, finished_at=time.time(),
                )
            message = redact(str(e), secrets)
            self.store_output(execution, message, stream='stderr')
            if record_output:
                execution.output = self.store.output(execution.id)
            if raise_on_error:
                logger.error(f"[{self.owner.ref}] {message}")
                raise
            return execution
