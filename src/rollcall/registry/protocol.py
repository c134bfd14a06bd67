"""Registration rules: turn a raw registration request into a stored Instance."""

from typing import Any, Optional, Tuple

from .errors import ValidationError
from .service_registry import InMemoryRegistry, Instance

VERSION_SEPARATOR = "@"

MISSING_FIELDS_MESSAGE = "Either host, port or name missing."


def normalize_name(name: str) -> Tuple[str, Optional[str]]:
    """Split ``name@version`` on the first separator.

    ``"svc@1.2.3"`` gives ``("svc", "1.2.3")``, ``"a@b@c"`` gives
    ``("a", "b@c")`` and a name without a separator has no version.
    An empty version (``"svc@"``) is treated as no version.
    """
    canonical, sep, version = name.partition(VERSION_SEPARATOR)
    if not sep:
        return name, None
    return canonical, version or None


def _coerce_port(port: Any) -> int:
    if isinstance(port, bool):
        raise ValidationError(f"Invalid port: {port!r}")
    if isinstance(port, int):
        value = port
    elif isinstance(port, str):
        try:
            value = int(port.strip())
        except ValueError:
            raise ValidationError(f"Invalid port: {port!r}") from None
    else:
        raise ValidationError(f"Invalid port: {port!r}")
    if not 0 < value < 65536:
        raise ValidationError(f"Port out of range: {value}")
    return value


def register(
    registry: InMemoryRegistry,
    name: Any,
    host: Any,
    port: Any,
    meta: Any = None,
    remote_addr: Optional[str] = None,
) -> Instance:
    """Validate a registration and insert it into *registry*.

    *host* falls back to *remote_addr* (the caller's observed address) when
    it is not given, so a missing host is only an error when neither is
    available. Raises ValidationError for missing or malformed fields.
    """
    if not host:
        host = remote_addr

    if not (name and host and port):
        raise ValidationError(MISSING_FIELDS_MESSAGE)
    if not isinstance(name, str) or not isinstance(host, str):
        raise ValidationError("name and host must be strings.")

    canonical, version = normalize_name(name)
    if not canonical:
        raise ValidationError(f"Invalid service name: {name!r}")

    return registry.insert(
        name=canonical,
        host=host,
        port=_coerce_port(port),
        version=version,
        meta=meta,
    )
