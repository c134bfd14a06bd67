#!/usr/bin/env python3
"""
In-memory Registry Store

This module provides:
- Instance: an immutable record of one registered microservice endpoint
- InMemoryRegistry: the lock-guarded collection of instances, indexed by id
  and by name
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict, replace
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Instance:
    """A registered microservice endpoint."""
    id: int
    name: str
    host: str
    port: int
    version: Optional[str] = None
    meta: Any = None
    heartbeat: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Instance':
        """Create from dictionary."""
        return cls(
            id=int(data['id']),
            name=data['name'],
            host=data['host'],
            port=int(data['port']),
            version=data.get('version'),
            meta=data.get('meta'),
            heartbeat=float(data.get('heartbeat') or 0.0),
        )


def _coerce_id(instance_id: Any) -> Optional[int]:
    """Return *instance_id* as an int, or None if it is not a valid id."""
    if isinstance(instance_id, bool):
        return None
    if isinstance(instance_id, int):
        return instance_id
    try:
        return int(str(instance_id).strip())
    except (TypeError, ValueError):
        return None


class InMemoryRegistry:
    """Thread-safe, dict-backed service registry.

    Ids come from a counter owned by the registry, so they keep increasing
    across deletions and are never handed out twice.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._next_id = 1
        self._instances: Dict[int, Instance] = {}
        self._names: Dict[str, set[int]] = {}  # name -> set of ids

    def insert(self, name: str, host: str, port: int,
               version: Optional[str] = None, meta: Any = None) -> Instance:
        with self._lock:
            instance = Instance(
                id=self._next_id,
                name=name,
                host=host,
                port=port,
                version=version,
                meta=meta,
                heartbeat=self._clock(),
            )
            self._next_id += 1
            self._instances[instance.id] = instance
            self._names.setdefault(name, set()).add(instance.id)
        logger.info("Registered %s (id=%d) at %s:%d",
                    _label(instance), instance.id, host, port)
        return instance

    def find_all(self) -> List[Instance]:
        with self._lock:
            return list(self._instances.values())

    def find_by_name(self, name: str, version: Optional[str] = None) -> List[Instance]:
        with self._lock:
            ids = sorted(self._names.get(name, ()))
            results = []
            for iid in ids:
                instance = self._instances[iid]
                if version is not None and instance.version != version:
                    continue
                results.append(instance)
        return results

    def find_by_id(self, instance_id: Any) -> Instance:
        iid = _coerce_id(instance_id)
        with self._lock:
            instance = self._instances.get(iid) if iid is not None else None
        if instance is None:
            raise NotFoundError(f"No such instance: {instance_id}")
        return instance

    def heartbeat(self, instance_id: Any) -> Instance:
        iid = _coerce_id(instance_id)
        with self._lock:
            instance = self._instances.get(iid) if iid is not None else None
            if instance is None:
                raise NotFoundError(f"No such instance: {instance_id}")
            instance = replace(instance, heartbeat=self._clock())
            self._instances[iid] = instance
        return instance

    def remove(self, instance_id: Any) -> Instance:
        """Remove and return an instance in one locked step.

        Raises NotFoundError for unknown or malformed ids. Any other error
        leaves the record in place and propagates.
        """
        iid = _coerce_id(instance_id)
        with self._lock:
            instance = self._instances.get(iid) if iid is not None else None
            if instance is None:
                raise NotFoundError(f"No such instance: {instance_id}")
            name_set = self._names[instance.name]
            name_set.discard(iid)
            if not name_set:
                del self._names[instance.name]
            del self._instances[iid]
        logger.info("Deregistered %s (id=%d)", _label(instance), iid)
        return instance

    def delete(self, instance_id: Any) -> bool:
        try:
            self.remove(instance_id)
        except NotFoundError:
            return False
        except Exception:
            logger.exception("Failed to deregister instance %s", instance_id)
            return False
        return True


def _label(instance: Instance) -> str:
    if instance.version is None:
        return instance.name
    return f"{instance.name}@{instance.version}"
