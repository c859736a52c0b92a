from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from statslogger.api.main import create_app
from statslogger.core.config import Settings
from statslogger.core.exceptions import DownstreamError
from statslogger.services.events import parse_record
from statslogger.services.sinks import FileSink


@pytest.fixture
def data_file(tmp_path: Path) -> Path:
    return tmp_path / "events.jsonl"


def _app(data_file: Path, **overrides):
    settings = Settings(data=str(data_file), redirect_url="https://example.org/about", **overrides)
    fatal: list[BaseException] = []
    return create_app(settings, on_fatal=fatal.append), fatal


def _lines(data_file: Path) -> list[dict]:
    if not data_file.exists():
        return []
    return [json.loads(l) for l in data_file.read_text().splitlines()]


def test_beacon_scenario(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.post("/beacon", data={"dur": "1500ms", "src": "/home", "dst": "/about", "referrer": "https://x"})
        assert r.status_code == 204
    (line,) = _lines(data_file)
    assert line["DurationMs"] == 1500
    assert line["SrcPage"] == "/home"
    assert line["DstPage"] == "/about"
    assert line["Referrer"] == "https://x"
    assert line["Remote"] == "testclient:50000"


def test_beacon_query_string_and_bad_duration(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        assert client.get("/beacon", params={"dur": "250", "src": "/a"}).status_code == 204
        assert client.post("/beacon", data={"dur": "soon", "src": "/a"}).status_code == 400
        assert client.post("/beacon", data={"src": "/a"}).status_code == 400
    assert [l["DurationMs"] for l in _lines(data_file)] == [250]


def test_form_fields_are_kept_verbatim(data_file: Path):
    app, _ = _app(data_file)
    fields = {"trigger": " view ", "src": "/a?x=1", "dst": "https://b/c#d", "dur": "12.5s"}
    with TestClient(app) as client:
        assert client.post("/form", data=fields, headers={"x-forwarded-for": "203.0.113.9"}).status_code == 204
        assert client.post("/api", data={"trigger": "ping"}).status_code == 204
    first, second = _lines(data_file)
    assert (first["Trigger"], first["Src"], first["Dst"], first["Duration"]) == (" view ", "/a?x=1", "https://b/c#d", "12.5s")
    assert first["Remote"] == "203.0.113.9"
    assert second["Trigger"] == "ping" and second["Src"] == ""


def test_unparseable_form_still_succeeds(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.post(
            "/form",
            content=b"--broken\r\nnot multipart",
            headers={"content-type": "multipart/form-data; boundary=zzz"},
        )
        assert r.status_code == 204
    (line,) = _lines(data_file)
    assert line["Trigger"] == ""


def test_invalid_json_is_rejected(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.post("/json", content=b"not json")
        assert r.status_code == 400
    assert _lines(data_file) == []


def test_valid_json_appends_one_line(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.post("/json", content=b'{"trigger": {"src": ["/x"]}, "n": 1}')
        assert r.status_code == 204
    (line,) = _lines(data_file)
    assert line["Kind"] == "json"
    assert line["Data"] == {"trigger": {"src": ["/x"]}, "n": 1}


def test_non_finite_json_numbers_are_rejected(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        for body in (b"NaN", b"[Infinity]", b'{"a": -Infinity}', b"1e400"):
            assert client.post("/json", content=body).status_code == 400
    assert _lines(data_file) == []


def test_unencodable_string_is_rejected_and_writer_keeps_going(data_file: Path):
    app, fatal = _app(data_file)
    with TestClient(app) as client:
        assert client.post("/json", content=b'{"a": "\\ud800"}').status_code == 400
        assert client.post("/json", content=b'{"a": "ok"}').status_code == 204
        assert client.get("/health").json()["writer"] == "open"
    assert fatal == []
    assert [l["Data"] for l in _lines(data_file)] == [{"a": "ok"}]


def test_long_integer_is_stored_exactly(data_file: Path):
    digits = "7" * 5000
    app, _ = _app(data_file)
    with TestClient(app) as client:
        assert client.post("/json", content=f'{{"n": {digits}}}'.encode()).status_code == 204
    (raw,) = data_file.read_text().splitlines()
    assert f'"Data":{{"n":{digits}}}' in raw


def test_csp_report(data_file: Path):
    app, _ = _app(data_file)
    report = {"csp-report": {"document-uri": "https://site/", "blocked-uri": "https://evil/x.js", "violated-directive": "script-src"}}
    with TestClient(app) as client:
        r = client.post("/csp", content=json.dumps(report), headers={"content-type": "application/csp-report"})
        assert r.status_code == 204
        assert client.post("/csp", content=b'{"other": 1}').status_code == 400
        assert client.post("/csp", content=b"{").status_code == 400
    (line,) = _lines(data_file)
    assert line["BlockedUri"] == "https://evil/x.js"
    assert line["ViolatedDirective"] == "script-src"
    assert line["Report"] == report["csp-report"]


def test_options_preflight(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.options("/form")
        assert r.status_code == 204
        assert r.content == b""
        assert r.headers["access-control-allow-methods"] == "GET, POST"
        assert r.headers["access-control-allow-origin"] == "*"
        assert r.headers["access-control-max-age"] == "86400"
    assert _lines(data_file) == []


def test_disallowed_methods(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        assert client.put("/form", data={"trigger": "x"}).status_code == 405
        assert client.delete("/json").status_code == 405
        assert client.get("/form").status_code == 405
        assert client.get("/json").status_code == 405
    assert _lines(data_file) == []


def test_cors_headers_on_normal_requests(data_file: Path):
    app, _ = _app(data_file, cors_origins="https://a.example, https://b.example")
    with TestClient(app) as client:
        r = client.get("/health", headers={"origin": "https://b.example"})
        assert r.headers["access-control-allow-origin"] == "https://b.example"
        r = client.get("/health", headers={"origin": "https://c.example"})
        assert "access-control-allow-origin" not in r.headers


def test_health_metrics_and_redirect(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["writer"] == "open"
        client.post("/form", data={"trigger": "ping"})
        client.post("/json", content=b"[]")
        client.post("/json", content=b"nope")
        text = client.get("/metrics").text
        assert 'statslogger_endpoint_hit_total{endpoint="form"} 1' in text
        assert 'statslogger_endpoint_hit_total{endpoint="json"} 1' in text
        assert "statslogger_serve_latency_ms_count" in text
        r = client.get("/", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "https://example.org/about"


def test_concurrent_requests_give_one_line_each(data_file: Path):
    app, _ = _app(data_file, max_pending=4)
    n = 40
    with TestClient(app) as client:
        with ThreadPoolExecutor(max_workers=8) as pool:
            codes = list(pool.map(lambda i: client.post("/form", data={"trigger": "ping", "src": f"/{i}"}).status_code, range(n)))
    assert codes == [204] * n
    raw = data_file.read_text().splitlines()
    assert len(raw) == n
    assert sorted(parse_record(l).src for l in raw) == sorted(f"/{i}" for i in range(n))


def test_accepted_records_survive_shutdown(data_file: Path):
    app, _ = _app(data_file)
    with TestClient(app) as client:
        for i in range(25):
            client.post("/form", data={"trigger": str(i)})
        writer = app.state.writer
    assert writer.state.value == "closed"
    assert [l["Trigger"] for l in _lines(data_file)] == [str(i) for i in range(25)]


class _DownSaver:
    acknowledged = True

    def __init__(self):
        self.closed = False

    def append(self, data: bytes) -> None:
        raise DownstreamError("saver unavailable")

    def close(self) -> None:
        self.closed = True


def test_downstream_failure_is_a_server_error(data_file: Path):
    sink = _DownSaver()
    app = create_app(Settings(), sink=sink, on_fatal=lambda exc: None)
    with TestClient(app) as client:
        assert client.post("/form", data={"trigger": "x"}).status_code == 502
        assert client.get("/health").json()["writer"] == "open"
    assert sink.closed


class _FullDisk:
    acknowledged = False

    def append(self, data: bytes) -> None:
        raise OSError("no space left on device")

    def close(self) -> None:
        pass


def test_sink_failure_calls_on_fatal_and_stops_intake():
    fatal: list[BaseException] = []
    app = create_app(Settings(write_through=True), sink=_FullDisk(), on_fatal=fatal.append)
    with TestClient(app) as client:
        assert client.post("/form", data={"trigger": "x"}).status_code == 500
        assert client.post("/form", data={"trigger": "y"}).status_code == 503
        assert client.get("/health").json()["writer"] == "failed"
    assert len(fatal) == 1


def test_write_through_file(data_file: Path):
    app = create_app(Settings(write_through=True), sink=FileSink(data_file), on_fatal=lambda exc: None)
    with TestClient(app) as client:
        assert client.post("/form", data={"trigger": "x"}).status_code == 204
        # persisted before the response
        assert len(_lines(data_file)) == 1
