"""Registrant-side heartbeat loop for one registered instance."""

import logging
import time
from typing import Callable, Optional

from .registry import RegistryConnectionError, ServiceRegistryClient

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
MISSING = "missing"
UNREACHABLE = "unreachable"


def send_heartbeat(client: ServiceRegistryClient, instance_id: int) -> str:
    """Send one heartbeat and return the resulting state."""
    try:
        instance = client.heartbeat(instance_id)
    except RegistryConnectionError as e:
        logger.debug("heartbeat for %s failed: %s", instance_id, e)
        return UNREACHABLE
    return ACCEPTED if instance is not None else MISSING


def run_heartbeat(
    client: ServiceRegistryClient,
    instance_id: int,
    interval: float = 30,
    max_beats: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[str]:
    """Refresh *instance_id* every *interval* seconds.

    Runs forever unless *max_beats* is given. State changes are logged;
    the registry never expires instances, so a ``missing`` state means
    someone deleted the record. Returns the last observed state.
    """
    last_state: Optional[str] = None
    beats = 0

    while max_beats is None or beats < max_beats:
        state = send_heartbeat(client, instance_id)
        beats += 1

        if state != last_state:
            log = logger.info if state == ACCEPTED else logger.warning
            log("[heartbeat] %s: %s -> %s", instance_id, last_state or "init", state)
            last_state = state

        if max_beats is not None and beats >= max_beats:
            break
        sleep(interval)

    return last_state
