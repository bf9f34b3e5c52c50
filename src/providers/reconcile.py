"""Name-keyed reconciliation of cloud resources.

Every provider resource is managed through two idempotent operations:

    find_or_create(kind, name, **spec)  - look up by name, create only if absent
    delete_if_exists(kind, name)        - look up by name, delete if present

A client participates by exposing find_<kind>(name), create_<kind>(name=..., **spec)
and delete_<kind>(id). Existing resources are never updated to match a new
spec; only presence is reconciled.
"""

import logging
from typing import Any, Iterable, Optional

from providers.base import ApiError

logger = logging.getLogger(__name__)


class Reconciler:
    """Apply find-or-create / delete-if-exists against one provider client."""

    def __init__(self, client):
        self.client = client

    def _method(self, verb: str, kind: str):
        method = getattr(self.client, f"{verb}_{kind}", None)
        if method is None:
            raise AttributeError(f"{type(self.client).__name__} does not support {verb}_{kind}")
        return method

    def find(self, kind: str, name: str) -> Optional[Any]:
        return self._method('find', kind)(name)

    def find_or_create(self, kind: str, name: str, **spec) -> Any:
        existing = self.find(kind, name)
        if existing is not None:
            logger.debug(f"Found {kind} {name}")
            return existing
        logger.info(f"Creating {kind} {name}")
        return self._method('create', kind)(name=name, **spec)

    def delete_if_exists(self, kind: str, name: str) -> bool:
        """Delete the named resource.

        Returns:
            True if a resource was deleted, False if it was already gone
        """
        try:
            existing = self.find(kind, name)
            if existing is None:
                logger.debug(f"{kind} {name} already gone")
                return False
            logger.info(f"Deleting {kind} {name}")
            self._method('delete', kind)(existing.id)
            return True
        except ApiError as e:
            if e.not_found:
                return False
            raise

    def teardown(self, name: str, kinds: Iterable[str]) -> None:
        """Delete resources of each kind named name, in the given order."""
        for kind in kinds:
            self.delete_if_exists(kind, name)
