"""
VDC registry.

The registry is the only state shared between VDCs. It is a JSON file:

{
  "version": "1.0",
  "revision": 7,
  "virtual_datacenters": [
    {"name": "dc1", "namespace": "vdc-dc1", "created_at": "2026-01-01T00:00:00Z",
     "status": "running", "management_subnet": "192.168.10.0/24",
     "config_file": "config/vdc-dc1/topology.yaml"}
  ]
}

Concurrency
Two orchestrator processes may deploy different VDCs at the same time.
Updates are optimistic read-modify-write:
1. read the file and remember its revision
2. let the caller mutate a copy of the records
3. take the lock file, re-read the revision, write only if it did not move
4. otherwise retry from step 1 with fresh data

The mutate callback is re-run on every attempt, so decisions such as
"first free subnet" are always made against the latest records.

The lock file holds the pid of its writer. A lock whose pid no longer
exists was left by a killed process and is removed.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from virtual_datacenter.core.errors import AllocationConflict
from virtual_datacenter.core.settings import RegistryConfig
from virtual_datacenter.core.types import VdcStatus

logger = logging.getLogger(__name__)

REGISTRY_VERSION = "1.0"

T = TypeVar("T")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def prefix_clash(name: str, others: Iterable[str]) -> Optional[str]:
    """
    Return a registered name that shares a dash prefix with name.

    Control plane objects are named {vdc}-{device}, so dc1 and dc1-a could
    both own dc1-a-hv1. Such pairs are never registered side by side.
    """
    for other in others:
        if other != name and (other.startswith(f"{name}-") or name.startswith(f"{other}-")):
            return other
    return None


@dataclass
class VdcRecord:
    """
    One registered VDC.

    extra keeps unknown keys so older registry files round trip unchanged.
    """

    name: str
    namespace: str
    management_subnet: str
    created_at: str = field(default_factory=utc_timestamp)
    status: VdcStatus = VdcStatus.created
    config_file: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update(
            {
                "name": self.name,
                "namespace": self.namespace,
                "created_at": self.created_at,
                "status": self.status.value,
                "management_subnet": self.management_subnet,
                "config_file": self.config_file,
            }
        )
        return out

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "VdcRecord":
        known = {"name", "namespace", "created_at", "status", "management_subnet", "config_file"}
        status_raw = str(obj.get("status") or VdcStatus.created.value)
        try:
            status = VdcStatus(status_raw)
        except ValueError:
            logger.warning("unknown status %r for vdc %s, treating as created", status_raw, obj.get("name"))
            status = VdcStatus.created
        return cls(
            name=str(obj["name"]),
            namespace=str(obj.get("namespace") or f"vdc-{obj['name']}"),
            management_subnet=str(obj.get("management_subnet") or ""),
            created_at=str(obj.get("created_at") or ""),
            status=status,
            config_file=str(obj.get("config_file") or ""),
            extra={k: v for k, v in obj.items() if k not in known},
        )


@dataclass
class RegistrySnapshot:
    revision: int
    records: List[VdcRecord]

    def get(self, name: str) -> Optional[VdcRecord]:
        for rec in self.records:
            if rec.name == name:
                return rec
        return None


class _LockBusy(Exception):
    pass


class VdcRegistry:
    """
    File backed registry with optimistic concurrency.

    All writes go through update(). The convenience methods below are thin
    wrappers that express one mutation each.
    """

    def __init__(self, path: Path, config: RegistryConfig | None = None) -> None:
        self._path = Path(path)
        self._config = config or RegistryConfig()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def _lock_path(self) -> Path:
        return self._path.with_name(self._path.name + ".lock")

    def read(self) -> RegistrySnapshot:
        if not self._path.exists():
            return RegistrySnapshot(revision=0, records=[])
        raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        records = [VdcRecord.from_dict(r) for r in raw.get("virtual_datacenters", [])]
        return RegistrySnapshot(revision=int(raw.get("revision", 0)), records=records)

    def list(self) -> List[VdcRecord]:
        return self.read().records

    def get(self, name: str) -> Optional[VdcRecord]:
        return self.read().get(name)

    def names(self) -> List[str]:
        return [r.name for r in self.list()]

    def update(self, mutate: Callable[[List[VdcRecord]], T]) -> T:
        """
        Apply mutate to a fresh copy of the records and persist the result.

        mutate may raise to abort; nothing is written in that case.
        Raises AllocationConflict when every attempt lost the race.
        """
        attempts = max(1, self._config.max_attempts)
        for attempt in range(1, attempts + 1):
            snap = self.read()
            records = copy.deepcopy(snap.records)
            result = mutate(records)

            try:
                with self._locked():
                    current = self.read().revision
                    if current != snap.revision:
                        logger.debug(
                            "registry revision moved from %s to %s, retrying (attempt %s)",
                            snap.revision,
                            current,
                            attempt,
                        )
                    else:
                        self._write(snap.revision + 1, records)
                        return result
            except _LockBusy:
                logger.debug("registry lock busy, retrying (attempt %s)", attempt)

            time.sleep(self._config.retry_delay_seconds * attempt)

        raise AllocationConflict(
            f"registry update lost {attempts} consecutive races",
            stage="namespace",
            resource=str(self._path),
        )

    def add(self, record: VdcRecord) -> VdcRecord:
        def _add(records: List[VdcRecord]) -> VdcRecord:
            clash = prefix_clash(record.name, [r.name for r in records])
            if clash is not None:
                raise AllocationConflict(
                    f"name overlaps the namespace of vdc {clash}", stage="namespace", resource=record.name
                )
            for existing in records:
                if existing.name == record.name:
                    raise AllocationConflict("vdc already registered", stage="namespace", resource=record.name)
                if record.management_subnet and existing.management_subnet == record.management_subnet:
                    raise AllocationConflict(
                        f"subnet {record.management_subnet} already used by vdc {existing.name}",
                        stage="namespace",
                        resource=record.name,
                    )
            records.append(record)
            return record

        return self.update(_add)

    def remove(self, name: str) -> bool:
        def _remove(records: List[VdcRecord]) -> bool:
            before = len(records)
            records[:] = [r for r in records if r.name != name]
            return len(records) != before

        removed = self.update(_remove)
        if removed:
            logger.info("removed vdc %s from registry", name)
        return removed

    def set_status(self, name: str, status: VdcStatus) -> bool:
        def _set(records: List[VdcRecord]) -> bool:
            for r in records:
                if r.name == name:
                    r.status = status
                    return True
            return False

        return self.update(_set)

    def _lock_is_stale(self) -> bool:
        """A lock is stale when the process id written into it is gone."""
        try:
            pid = int(self._lock_path.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return False
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self._config.lock_timeout_seconds
        while True:
            try:
                fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if self._lock_is_stale():
                    logger.warning("removing stale registry lock %s", self._lock_path)
                    self._lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise _LockBusy() from None
                time.sleep(0.05)
        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            self._lock_path.unlink(missing_ok=True)

    def _write(self, revision: int, records: List[VdcRecord]) -> None:
        payload = {
            "version": REGISTRY_VERSION,
            "revision": revision,
            "virtual_datacenters": [r.to_dict() for r in records],
        }
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".vdc-registry-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
