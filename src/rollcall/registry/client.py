"""Thin HTTP client for the registry API."""

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, List, Optional, Tuple

from .errors import RegistryConnectionError, ValidationError
from .service_registry import Instance


class ServiceRegistryClient:
    """Thin HTTP client that talks to a running registry server."""

    def __init__(self, host: str = "localhost", port: int = 8001,
                 scheme: str = "http", timeout: float = 10):
        self._base = f"{scheme}://{host}:{port}"
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _request(self, method: str, path: str,
                 body: Optional[dict] = None) -> Tuple[int, Any]:
        url = f"{self._base}{path}"
        data = None
        headers = {}
        if body is not None:
            data = json.dumps(body).encode()
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with self._opener.open(req, timeout=self._timeout) as resp:
                return resp.status, json.loads(resp.read().decode() or "null")
        except urllib.error.HTTPError as e:
            # 4xx/5xx responses still carry a JSON body
            raw = e.read().decode()
            try:
                payload = json.loads(raw) if raw else None
            except ValueError:
                payload = {"message": raw}
            return e.code, payload

    def _get(self, path: str) -> Any:
        status, data = self._request("GET", path)
        if status != 200:
            return None
        return data

    def index(self) -> dict:
        try:
            return self._get("/") or {}
        except (urllib.error.URLError, OSError):
            return {}

    def list_services(self) -> List[Instance]:
        try:
            data = self._get("/services") or []
            return [Instance.from_dict(d) for d in data]
        except (urllib.error.URLError, OSError):
            return []

    def find_services(self, name: str, version: Optional[str] = None) -> List[Instance]:
        path = f"/services/{urllib.parse.quote(name, safe='')}"
        if version:
            path += "?" + urllib.parse.urlencode({"version": version})
        try:
            data = self._get(path) or []
            return [Instance.from_dict(d) for d in data]
        except (urllib.error.URLError, OSError):
            return []

    def register(self, name: str, port: int, host: Optional[str] = None,
                 meta: Any = None) -> Instance:
        body: dict = {"name": name, "port": port}
        if host:
            body["host"] = host
        if meta is not None:
            body["meta"] = meta
        try:
            status, data = self._request("POST", "/services", body)
        except (urllib.error.URLError, OSError) as e:
            raise RegistryConnectionError(f"Cannot reach registry at {self._base}: {e}") from e
        if status == 400:
            raise ValidationError((data or {}).get("message", "registration rejected"))
        if status != 201:
            raise RegistryConnectionError(f"Unexpected response {status} from {self._base}")
        return Instance.from_dict(data)

    def heartbeat(self, instance_id: int) -> Optional[Instance]:
        try:
            status, data = self._request("POST", f"/services/{instance_id}")
        except (urllib.error.URLError, OSError) as e:
            raise RegistryConnectionError(f"Cannot reach registry at {self._base}: {e}") from e
        if status == 404:
            return None
        if status != 202:
            raise RegistryConnectionError(f"Unexpected response {status} from {self._base}")
        return Instance.from_dict(data["doc"])

    def deregister(self, instance_id: int) -> bool:
        try:
            status, data = self._request("DELETE", f"/services/{instance_id}")
        except (urllib.error.URLError, OSError) as e:
            raise RegistryConnectionError(f"Cannot reach registry at {self._base}: {e}") from e
        if status != 200:
            return False
        return bool((data or {}).get("success"))
