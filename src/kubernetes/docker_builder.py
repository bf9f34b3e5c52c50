"""Build application images and push them to the in-cluster registry.

Two modes:
- remote (default): docker runs on the server against the synced workspace,
  issued through the remote executor so every call lands in the ledger.
- local: docker runs here with DOCKER_HOST=ssh://user@ip, building a local
  context directory on the server's daemon.
"""

import logging
import os
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from common import run_command
from kubernetes.installer import REGISTRY_PORT
from naming import DEFAULT_USER
from remote.executor import RemoteExecutor
from remote.ssh import SSHError

logger = logging.getLogger(__name__)

KEEP_IMAGES = 3
BUILD_TIMEOUT = 600
PUSH_TIMEOUT = 300


class DockerBuildError(Exception):
    """A docker build, tag or push failed."""


def timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')


class DockerBuilder:
    def __init__(
        self,
        executor: RemoteExecutor,
        prefix: str,
        server_ip: Optional[str] = None,
        user: str = DEFAULT_USER,
        keep: int = KEEP_IMAGES,
    ):
        self.executor = executor
        self.prefix = prefix
        self.server_ip = server_ip
        self.user = user
        self.keep = keep
        self._local_context: Optional[Path] = None
        self._remote_context: Optional[str] = None

    def local_tag(self, ts: str) -> str:
        return f"{self.prefix}:{ts}"

    def registry_tag(self, ts: str) -> str:
        return f"localhost:{REGISTRY_PORT}/{self.prefix}:{ts}"

    @property
    def docker_host(self) -> str:
        if not self.server_ip:
            raise DockerBuildError("No server IP available for Docker build")
        return f"ssh://{self.user}@{self.server_ip}"

    def build_and_push(
        self,
        context_path: Optional[Path] = None,
        dockerfile: str = 'Dockerfile',
        platform: str = 'linux/amd64',
        workspace: Optional[str] = None,
    ) -> dict:
        """Build, push, tag latest and prune.

        Pass context_path for a local build context, or workspace for a
        context already synced on the server.

        Returns:
            dict with local_tag, registry_tag and timestamp
        """
        if context_path is None and workspace is None:
            raise DockerBuildError("Either context_path or workspace is required")
        self._local_context = Path(context_path) if context_path is not None else None
        self._remote_context = workspace

        result = self.build(dockerfile=dockerfile, platform=platform)
        self.push(result['registry_tag'])
        self.tag_latest(result['local_tag'])
        self.cleanup_old_images()
        return result

    def build(self, dockerfile: str = 'Dockerfile', platform: str = 'linux/amd64') -> dict:
        ts = timestamp()
        local, registry = self.local_tag(ts), self.registry_tag(ts)
        logger.info(f"[docker] building {local} ({platform})")
        self._docker('build', '--platform', platform, '--pull', '-f', dockerfile, '-t', local, '.',
                     in_context=True, timeout=BUILD_TIMEOUT)
        self._docker('tag', local, registry)
        return {'local_tag': local, 'registry_tag': registry, 'timestamp': ts}

    def push(self, registry_tag: str) -> None:
        logger.info(f"[docker] pushing {registry_tag}")
        self._docker('push', registry_tag, timeout=PUSH_TIMEOUT)

    def tag_latest(self, local_tag: str) -> None:
        self._docker('tag', local_tag, f"{self.prefix}:latest")

    def image_tags(self) -> list[str]:
        """Timestamp tags for this prefix, newest first."""
        output = self._docker('images', self.prefix, '--format', '{{.Tag}}', raise_on_error=False)
        tags = {line.strip() for line in output.splitlines() if line.strip()}
        tags -= {'latest', '<none>'}
        return sorted(tags, reverse=True)

    def cleanup_old_images(self, keep: Optional[int] = None) -> list[str]:
        """Remove all but the newest `keep` images, locally and from the node's containerd.

        Returns:
            The removed tags
        """
        keep = self.keep if keep is None else keep
        stale = self.image_tags()[keep:]
        for tag in stale:
            self._docker('rmi', f"{self.prefix}:{tag}", raise_on_error=False)
            try:
                self.executor.run(
                    f"sudo crictl rmi {self.registry_tag(tag)} 2>/dev/null || true",
                    raise_on_error=False,
                )
            except SSHError as e:
                logger.warning(f"[docker] crictl rmi {tag} failed: {e}")
        if stale:
            logger.info(f"[docker] pruned {len(stale)} old image(s)")
        return stale

    def _docker(self, *args: str, in_context: bool = False, timeout: int = 300,
                raise_on_error: bool = True) -> str:
        if self._local_context is not None:
            return self._docker_local(args, in_context, timeout, raise_on_error)
        return self._docker_remote(args, in_context, timeout, raise_on_error)

    def _docker_local(self, args, in_context, timeout, raise_on_error) -> str:
        env = dict(os.environ, DOCKER_HOST=self.docker_host)
        cwd = self._local_context if in_context else None
        rc, out, err = run_command(['docker', *args], cwd=cwd, timeout=timeout, env=env)
        if rc != 0 and raise_on_error:
            raise DockerBuildError(f"docker {args[0]} failed: {err.strip() or out.strip()}")
        return out

    def _docker_remote(self, args, in_context, timeout, raise_on_error) -> str:
        command = shlex.join(['docker', *args])
        if in_context and self._remote_context:
            command = f"cd {shlex.quote(self._remote_context)} && {command}"
        execution = self.executor.run(command, timeout=timeout, raise_on_error=False)
        if not execution.success and raise_on_error:
            raise DockerBuildError(f"docker {args[0]} failed (exit {execution.exit_code})")
        return execution.output
