"""Block volumes for release databases.

A volume is found or created by name, attached to the release server, then
formatted (only if it has no filesystem), mounted and added to fstab. Every
step checks current state first, so re-running against a mounted volume
changes nothing.
"""

import logging
import re
import shlex
import time
from typing import Optional

from providers import Reconciler
from providers.types import Server, Volume
from provisioners.base import ProvisionError
from remote.executor import RemoteExecutor

logger = logging.getLogger(__name__)

DEVICE_PATH_ATTEMPTS, DEVICE_PATH_INTERVAL = 30, 2
DEVICE_READY_ATTEMPTS, DEVICE_READY_INTERVAL = 30, 2


def size_in_gb(size) -> Optional[int]:
    """Leading integer of a size like '10Gi', 20 or '20'."""
    if size is None:
        return None
    if isinstance(size, int):
        return size
    match = re.match(r'\s*(\d+)', str(size))
    return int(match.group(1)) if match else None


class VolumeProvisioner:
    def __init__(self, compute, executor: RemoteExecutor):
        self.compute = compute
        self.executor = executor
        self.reconciler = Reconciler(compute)

    def _run(self, command: str, raise_on_error: bool = True, timeout: int = 300):
        return self.executor.run(command, raise_on_error=raise_on_error, timeout=timeout)

    def provision(self, name: str, size: int, server: Server, mount_path: str) -> Volume:
        """Ensure volume name is attached to server and mounted at mount_path."""
        volume = self.reconciler.find_or_create(
            'volume', name,
            size=size,
            location=server.location.split('-')[0],
            labels={'purpose': 'release'},
        )

        if str(volume.server_id) != str(server.id):
            logger.info(f"Attaching volume {name} to server {server.id}")
            self.compute.attach_volume(volume.id, server.id)

        device_path = self.wait_for_device_path(volume.id)
        self.wait_for_device(device_path)
        self.mount(device_path, mount_path)
        return volume

    def wait_for_device_path(self, volume_id) -> str:
        for _ in range(DEVICE_PATH_ATTEMPTS):
            volume = self.compute.get_volume(volume_id)
            if volume and volume.device_path:
                return volume.device_path
            time.sleep(DEVICE_PATH_INTERVAL)
        raise ProvisionError(f"Volume {volume_id} has no device path after attachment")

    def wait_for_device(self, device_path: str) -> None:
        device = shlex.quote(device_path)
        for _ in range(DEVICE_READY_ATTEMPTS):
            if 'ready' in self._run(f"test -b {device} && echo 'ready' || true").output:
                return
            time.sleep(DEVICE_READY_INTERVAL)
        raise ProvisionError(f"Device {device_path} not available on server")

    def mount(self, device_path: str, mount_path: str) -> None:
        device, path = shlex.quote(device_path), shlex.quote(mount_path)

        if self._run(f"mountpoint -q {path} && echo 'mounted' || echo 'not'").output.strip() == 'mounted':
            logger.info(f"{mount_path} already mounted")
            return

        self._run(f"sudo mkdir -p {path}")

        blkid = self._run(f"sudo blkid {device} || true").output
        if 'TYPE=' not in blkid:
            logger.info(f"Formatting {device_path} as xfs")
            self._run(f"sudo mkfs.xfs {device}")

        self._run(f"sudo mount {device} {path}")

        fstab = self._run(f"grep {shlex.quote(mount_path)} /etc/fstab || true").output
        if mount_path not in fstab:
            self._run(
                f"UUID=$(sudo blkid -s UUID -o value {device}) && "
                f"echo \"UUID=$UUID {mount_path} xfs defaults,nofail 0 2\" | sudo tee -a /etc/fstab"
            )

        if self._run(f"mountpoint -q {path} && echo 'ok' || echo 'fail'").output.strip() != 'ok':
            raise ProvisionError(f"Failed to mount {device_path} at {mount_path}")

    def cleanup(self, name: str) -> bool:
        """Detach and delete volume name.

        Returns:
            True if a volume was deleted
        """
        volume = self.compute.find_volume(name)
        if volume is None:
            return False
        if volume.server_id:
            self.compute.detach_volume(volume.id)
        self.compute.delete_volume(volume.id)
        logger.info(f"Deleted volume {name}")
        return True
