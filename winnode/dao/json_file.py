"""
JSON-file implementation of ResourceStateStore.

File format
───────────
  Path    : <output_dir>/windows-node-installer.json  (name configurable)
  Content : {"instanceIDs": ["i-..."], "securityGroupIDs": ["sg-..."]}

Every write goes to a temporary file in the same directory which is fsynced
and then renamed over the ledger, so readers never observe a half-written
file.  The store assumes a single writer per output directory and does no
file locking.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from winnode.dao.base import ResourceStateStore
from winnode.errors import LedgerCorruptError
from winnode.schemas.resources import ProvisionedResourceSet, ResourceKind

logger = logging.getLogger(__name__)


class JsonFileResourceStateStore(ResourceStateStore):
    """ResourceStateStore backed by a small JSON document on disk."""

    def __init__(self, path) -> None:
        self.path = Path(path)

    @classmethod
    def in_directory(cls, output_dir, file_name: str) -> "JsonFileResourceStateStore":
        return cls(Path(output_dir) / file_name)

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _write(self, resources: ProvisionedResourceSet) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = resources.model_dump(by_alias=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    # ── ResourceStateStore interface ──────────────────────────────────────────

    def load(self) -> ProvisionedResourceSet:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ProvisionedResourceSet()
        except OSError as exc:
            raise LedgerCorruptError(f"cannot read ledger {self.path}: {exc}") from exc

        try:
            return ProvisionedResourceSet.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.error("Ledger %s is malformed: %s", self.path, exc)
            raise LedgerCorruptError(
                f"ledger {self.path} is malformed; refusing to guess which "
                f"resources are owned: {exc}"
            ) from exc

    def append(self, kind: ResourceKind, resource_id: str) -> None:
        resources = self.load()
        ids = resources.ids(kind)
        if resource_id in ids:
            return
        ids.append(resource_id)
        self._write(resources)
        logger.info("Recorded %s '%s' in %s.", kind.value, resource_id, self.path)

    def remove(self, kind: ResourceKind, resource_id: str) -> None:
        resources = self.load()
        ids = resources.ids(kind)
        if resource_id not in ids:
            return
        ids.remove(resource_id)
        self._write(resources)
        logger.info("Removed %s '%s' from %s.", kind.value, resource_id, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.info("Ledger %s removed.", self.path)
        except FileNotFoundError:
            pass
