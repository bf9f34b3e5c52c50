"""kubectl over the remote executor.

Every call is recorded in the owner's execution ledger.
"""

import json
import logging
import shlex
from typing import Optional

from common import stdin_heredoc
from remote.executor import RemoteExecutor
from state.models import Execution

logger = logging.getLogger(__name__)

NAME_LABEL = 'app.kubernetes.io/name'


class Kubectl:
    """Thin kubectl wrapper. Namespace defaults to 'default'."""

    def __init__(self, executor: RemoteExecutor, namespace: str = 'default'):
        self.executor = executor
        self.namespace = namespace

    def _run(self, command: str, raise_on_error: bool = True, timeout: int = 300, **kwargs) -> Execution:
        return self.executor.run(command, raise_on_error=raise_on_error, timeout=timeout, **kwargs)

    def apply(self, manifest_yaml: str, recorded_yaml: Optional[str] = None, secrets=()) -> Execution:
        """Apply manifests from stdin.

        recorded_yaml, when given, is what the ledger keeps in place of
        manifest_yaml (e.g. with Secret data masked). secrets are redacted
        from whatever is recorded.
        """
        record_as = stdin_heredoc('kubectl apply -f -', recorded_yaml) if recorded_yaml is not None else None
        return self._run(stdin_heredoc('kubectl apply -f -', manifest_yaml), record_as=record_as, secrets=secrets)

    def get(self, resource: str, name: Optional[str] = None, record_output: bool = True) -> Optional[dict]:
        """Resource as parsed JSON, or None if kubectl fails.

        Pass record_output=False for objects that hold secrets.
        """
        command = f"kubectl get {resource}"
        if name:
            command += f" {shlex.quote(name)}"
        command += f" -n {self.namespace} -o json"
        execution = self._run(command, raise_on_error=False, record_output=record_output)
        if not execution.success:
            return None
        try:
            return json.loads(execution.output)
        except ValueError:
            logger.warning(f"Unparseable kubectl output for {resource} {name or ''}")
            return None

    def logs(self, deployment: str, tail: int = 100) -> Execution:
        return self._run(f"kubectl logs deployment/{deployment} -n {self.namespace} --tail={tail}")

    def exec(self, pod: str, command: str, raise_on_error: bool = True) -> Execution:
        return self._run(f"kubectl exec {pod} -n {self.namespace} -- {command}", raise_on_error=raise_on_error)

    def get_pod_for_deployment(self, deployment: str) -> Optional[str]:
        execution = self._run(
            f"kubectl get pods -l {NAME_LABEL}={deployment} -n {self.namespace} "
            f"-o jsonpath='{{.items[0].metadata.name}}'",
            raise_on_error=False,
        )
        if not execution.success:
            return None
        return execution.output.strip().replace("'", '') or None

    def scale(self, deployment: str, replicas: int) -> Execution:
        return self._run(f"kubectl scale deployment/{deployment} --replicas={int(replicas)} -n {self.namespace}")

    def rollout_restart(self, deployment: str) -> Execution:
        return self._run(f"kubectl rollout restart deployment/{deployment} -n {self.namespace}")

    def rollout_status(self, deployment: str, timeout: int = 300) -> Execution:
        """Block until the deployment's rollout completes (raises on timeout)."""
        return self._run(
            f"kubectl rollout status deployment/{deployment} -n {self.namespace} --timeout={timeout}s",
            timeout=timeout + 30,
        )
