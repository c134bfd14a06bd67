import http.client
import json
import logging
import socket
import ssl
import threading
import time
import urllib.error
import urllib.request

import pytest

from rollcall.config import RollcallConfig
from rollcall.registry import InMemoryRegistry, ValidationError
from rollcall.server import parse_form, serve, start_secure_server


def _call(server, method, path, body=None, raw=None, content_type="application/json"):
    url = f"http://127.0.0.1:{server.server_address[1]}{path}"
    data = raw
    if body is not None:
        data = json.dumps(body).encode()
    req = urllib.request.Request(url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", content_type)
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        with opener.open(req, timeout=5) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read())


def test_index(server):
    assert _call(server, "GET", "/") == (200, {"self": "/", "services": "/services"})


def test_no_services(server):
    assert _call(server, "GET", "/services") == (200, [])


def test_register_without_host_uses_remote_address(server):
    status, body = _call(server, "POST", "/services", {"name": "web@1.2.3", "port": 18803})
    assert status == 201
    assert body["name"] == "web"
    assert body["version"] == "1.2.3"
    assert body["port"] == 18803
    assert body["host"] == "127.0.0.1"
    assert body["id"] >= 1

    status, found = _call(server, "GET", "/services/web?version=1.2.3")
    assert status == 200
    assert found == [body]


@pytest.mark.parametrize("payload", [
    {"name": "web@1.2.3"},
    {"port": 18803},
    {"port": 18803, "host": "127.0.0.1"},
])
def test_register_missing_fields(server, payload):
    status, body = _call(server, "POST", "/services", payload)
    assert status == 400
    assert "missing" in body["message"]
    assert _call(server, "GET", "/services") == (200, [])


def test_register_malformed_json(server):
    status, body = _call(server, "POST", "/services", raw=b"{not json")
    assert status == 400
    assert "Malformed" in body["message"]


def test_register_non_object_json(server):
    status, _ = _call(server, "POST", "/services", [1, 2])
    assert status == 400


def test_register_form_encoded(server):
    status, body = _call(
        server, "POST", "/services",
        raw=b"name=api%400.1.1&port=18805&host=10.0.0.9",
        content_type="application/x-www-form-urlencoded",
    )
    assert status == 201
    assert (body["name"], body["version"], body["port"], body["host"]) == ("api", "0.1.1", 18805, "10.0.0.9")


def test_trailing_slash_on_register(server):
    status, _ = _call(server, "POST", "/services/", {"name": "web", "port": 80})
    assert status == 201


def test_find_by_name_and_version(server):
    _call(server, "POST", "/services", {"name": "web@1.2.3", "port": 18803})
    _call(server, "POST", "/services", {"name": "web@0.1.1", "port": 18803, "host": "127.0.0.1"})

    assert len(_call(server, "GET", "/services")[1]) == 2
    assert _call(server, "GET", "/services/notexistent") == (200, [])
    assert len(_call(server, "GET", "/services/web")[1]) == 2

    status, found = _call(server, "GET", "/services/web?version=0.1.1")
    assert status == 200
    assert len(found) == 1
    assert found[0]["version"] == "0.1.1"


def test_heartbeat(server, registry, clock):
    _, created = _call(server, "POST", "/services", {"name": "web", "port": 80, "meta": {"a": 1}})
    clock.advance(10)
    status, body = _call(server, "POST", f"/services/{created['id']}")
    assert status == 202
    assert body["success"] is True
    assert body["message"] == "heartbeat accepted"
    assert body["doc"]["heartbeat"] == created["heartbeat"] + 10
    assert {k: v for k, v in body["doc"].items() if k != "heartbeat"} == \
        {k: v for k, v in created.items() if k != "heartbeat"}


def test_heartbeat_unknown(server):
    assert _call(server, "POST", "/services/999") == (404, {"message": "No such instance"})


def test_heartbeat_malformed_id(server):
    status, _ = _call(server, "POST", "/services/abc")
    assert status == 404


def test_delete_unknown(server):
    status, body = _call(server, "DELETE", "/services/999")
    assert status == 404
    assert not body.get("success")


def test_delete(server):
    _, created = _call(server, "POST", "/services", {"name": "web@1.2.3", "port": 18803})
    assert _call(server, "DELETE", f"/services/{created['id']}") == (200, {"success": True})
    assert _call(server, "GET", "/services/web") == (200, [])
    assert _call(server, "DELETE", f"/services/{created['id']}")[0] == 404


def test_delete_internal_failure_reports_false(server, registry, monkeypatch):
    _, created = _call(server, "POST", "/services", {"name": "web", "port": 80})

    def broken_remove(instance_id):
        raise RuntimeError("index corrupted")

    monkeypatch.setattr(registry, "remove", broken_remove)
    assert _call(server, "DELETE", f"/services/{created['id']}") == (200, {"success": False})


def test_concurrent_deletes_one_success_rest_not_found(server, registry):
    created = registry.insert("web", "10.0.0.1", 80)
    results = []
    barrier = threading.Barrier(5)

    def worker():
        barrier.wait()
        results.append(_call(server, "DELETE", f"/services/{created.id}"))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count((200, {"success": True})) == 1
    assert results.count((404, {"message": "No such instance"})) == 4


def test_unknown_route(server):
    assert _call(server, "GET", "/nope")[0] == 404
    assert _call(server, "DELETE", "/services")[0] == 404


def test_handler_error_is_500(server, registry, monkeypatch):
    def boom():
        raise RuntimeError("boom")

    monkeypatch.setattr(registry, "find_all", boom)
    status, body = _call(server, "GET", "/services")
    assert status == 500
    assert body == {"message": "Internal server error"}


def test_client_round_trip(client):
    created = client.register("web@1.2.3", 18803, meta={"zone": "a"})
    assert created.host == "127.0.0.1"
    assert client.index() == {"self": "/", "services": "/services"}
    assert client.list_services() == [created]
    assert client.find_services("web", version="1.2.3") == [created]
    assert client.find_services("web", version="9") == []

    refreshed = client.heartbeat(created.id)
    assert refreshed.id == created.id
    assert client.deregister(created.id) is True
    assert client.deregister(created.id) is False
    assert client.heartbeat(created.id) is None


def test_client_register_validation_error(client):
    with pytest.raises(ValidationError):
        client.register("", 80)


def test_secure_server_skipped_without_material(tmp_path, caplog):
    caplog.set_level(logging.WARNING, logger="rollcall.server")
    server = start_secure_server(
        InMemoryRegistry(), "127.0.0.1", 0,
        key_path=str(tmp_path / "missing.key"),
        cert_path=str(tmp_path / "missing.pem"),
    )
    assert server is None
    assert "could not read ssl cert + key" in caplog.text


def test_secure_server_skipped_with_invalid_material(tmp_path):
    key = tmp_path / "server.key"
    cert = tmp_path / "server.pem"
    key.write_text("not a key")
    cert.write_text("not a cert")
    assert start_secure_server(InMemoryRegistry(), "127.0.0.1", 0, str(key), str(cert)) is None


def test_serve_falls_back_to_plain_http(tmp_path):
    config = RollcallConfig(
        host="127.0.0.1",
        port=0,
        secure_port=0,
        secure_key_path=str(tmp_path / "server.key"),
        secure_cert_path=str(tmp_path / "server.pem"),
    )
    registry = InMemoryRegistry()
    servers = serve(config, registry)
    try:
        assert len(servers) == 1
        status, body = _call(servers[0], "POST", "/services", {"name": "web", "port": 80})
        assert status == 201
        assert registry.find_by_id(body["id"]).name == "web"
    finally:
        for s in servers:
            s.shutdown()
            s.server_close()


def _raw_post(server, headers, body=b""):
    conn = http.client.HTTPConnection("127.0.0.1", server.server_address[1], timeout=5)
    try:
        conn.putrequest("POST", "/services")
        for name, value in headers.items():
            conn.putheader(name, value)
        conn.endheaders(body)
        resp = conn.getresponse()
        return resp.status, json.loads(resp.read())
    finally:
        conn.close()


def test_register_invalid_content_length(server):
    status, body = _raw_post(server, {"Content-Type": "application/json", "Content-Length": "abc"})
    assert status == 400
    assert "Content-Length" in body["message"]


def test_register_form_body_not_utf8(server):
    status, body = _call(
        server, "POST", "/services",
        raw=b"name=\xff\xfe&port=1",
        content_type="application/x-www-form-urlencoded",
    )
    assert status == 400
    assert "UTF-8" in body["message"]


def test_register_form_nests_bracketed_meta(server):
    status, body = _call(
        server, "POST", "/services",
        raw=b"name=web&port=80&meta%5Bzone%5D=eu&meta[rack][row]=3",
        content_type="application/x-www-form-urlencoded",
    )
    assert status == 201
    assert body["meta"] == {"zone": "eu", "rack": {"row": "3"}}


def test_parse_form():
    assert parse_form("name=a&name=b&meta[x]=1") == {"name": "a", "meta": {"x": "1"}}
    assert parse_form("") == {}


def _https_get(port, path="/", timeout=5):
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    opener = urllib.request.build_opener(
        urllib.request.ProxyHandler({}),
        urllib.request.HTTPSHandler(context=context),
    )
    with opener.open(f"https://127.0.0.1:{port}{path}", timeout=timeout) as resp:
        return resp.status, json.loads(resp.read())


def test_secure_server_serves_https(tls_material):
    key_path, cert_path = tls_material
    server = start_secure_server(InMemoryRegistry(), "127.0.0.1", 0, key_path, cert_path)
    assert server is not None
    try:
        assert _https_get(server.server_address[1]) == (200, {"self": "/", "services": "/services"})
    finally:
        server.shutdown()
        server.server_close()


def test_secure_server_not_blocked_by_idle_peer(tls_material):
    key_path, cert_path = tls_material
    server = start_secure_server(InMemoryRegistry(), "127.0.0.1", 0, key_path, cert_path)
    port = server.server_address[1]
    idle = socket.create_connection(("127.0.0.1", port), timeout=5)
    try:
        started = time.monotonic()
        assert _https_get(port, timeout=3)[0] == 200
        assert time.monotonic() - started < 3
    finally:
        idle.close()
        server.shutdown()
        server.server_close()


def test_serve_starts_both_listeners(tls_material):
    key_path, cert_path = tls_material
    config = RollcallConfig(
        host="127.0.0.1",
        port=0,
        secure_port=0,
        secure_key_path=key_path,
        secure_cert_path=cert_path,
    )
    servers = serve(config, InMemoryRegistry())
    try:
        assert len(servers) == 2
        plain, secure = servers
        status, created = _call(plain, "POST", "/services", {"name": "web@1.0", "port": 80})
        assert status == 201
        assert _https_get(secure.server_address[1], "/services/web") == (200, [created])
    finally:
        for s in servers:
            s.shutdown()
            s.server_close()
