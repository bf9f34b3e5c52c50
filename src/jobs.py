"""Background provisioning.

Each job runs one provisioner method on a daemon thread and returns the
thread, so callers may join() it or let it run. Failures are already
recorded on the owner by the provisioner; the job only logs them.
"""

import logging
import threading

logger = logging.getLogger(__name__)


def _run(provisioner, method: str) -> None:
    owner = provisioner.owner
    try:
        getattr(provisioner, method)()
    except Exception:
        logger.exception(f"[{owner.ref}] {method} failed")


def run_later(provisioner, method: str) -> threading.Thread:
    thread = threading.Thread(
        target=_run,
        args=(provisioner, method),
        name=f"{method}-{provisioner.owner.ref}",
        daemon=True,
    )
    thread.start()
    logger.debug(f"Started {thread.name}")
    return thread


def provision_later(provisioner) -> threading.Thread:
    return run_later(provisioner, 'provision')


def deprovision_later(provisioner) -> threading.Thread:
    return run_later(provisioner, 'deprovision')
