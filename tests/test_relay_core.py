import asyncio
import json
import pytest
from unittest.mock import MagicMock, AsyncMock, patch
from structures import HeaderMultiDict, RelayRequest, RelayRecord, RelayState
from config import GatewayConfig
from relay_common import UpstreamError
from routing import parse_target, merge_route
from relay_core import (
    Http11GatewayHandler, build_upstream_head, build_relay_response_headers,
    parse_response_head, read_response_head, response_has_body, normalize_route
)


def make_relay(headers, method="GET", target="http://api.test:8080/data?key1=orig"):
    relay = RelayRequest(method, "/proxy", HeaderMultiDict(headers), [])
    relay.target = parse_target(target)
    return relay


def written(writer) -> bytes:
    return b"".join(c.args[0] for c in writer.write.call_args_list)


def split_response(raw: bytes):
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode('latin-1').split("\r\n")
    return int(lines[0].split(" ")[1]), lines[1:], body


class TestUpstreamHead:
    def test_host_rewrite_and_forwarded_host(self):
        relay = make_relay([("Host", "gateway.local:3000"), ("X-Forwarded-Host", "evil.example"), ("Accept", "*/*")])
        raw = build_upstream_head(relay, merge_route(relay.target, [])).decode()
        lines = raw.split("\r\n")
        assert lines[0] == "GET /data?key1=orig HTTP/1.1"
        assert lines[1] == "Host: api.test:8080"
        assert "Accept: */*" in lines
        assert "X-Forwarded-Host: gateway.local:3000" in lines
        assert [l for l in lines if l.lower().startswith("x-forwarded-host:")] == ["X-Forwarded-Host: gateway.local:3000"]
        assert raw.endswith("\r\n\r\n")

    def test_browser_context_and_hop_headers_are_stripped(self):
        relay = make_relay([
            ("Host", "gw"), ("Origin", "https://app.example"), ("Referer", "https://app.example/page"),
            ("Connection", "keep-alive, X-Hop"), ("Keep-Alive", "timeout=5"), ("X-Hop", "1"),
            ("Proxy-Authorization", "Basic abc"), ("Authorization", "Bearer t"),
        ])
        raw = build_upstream_head(relay, merge_route(relay.target, [])).decode().lower()
        for name in ("origin:", "referer:", "keep-alive:", "x-hop:", "proxy-authorization:"):
            assert name not in raw
        assert "authorization: bearer t" in raw
        assert "connection: close" in raw

    def test_duplicates_and_spelling_preserved(self):
        relay = make_relay([("Host", "gw"), ("X-Custom-Header", "a"), ("x-custom-header", "b")])
        raw = build_upstream_head(relay, merge_route(relay.target, [])).decode()
        assert "X-Custom-Header: a\r\nx-custom-header: b\r\n" in raw

    def test_upgrade_head(self):
        relay = make_relay([("Host", "gw"), ("Connection", "Upgrade"), ("Upgrade", "websocket"),
                            ("Sec-WebSocket-Key", "k")], target="ws://api.test/ws")
        raw = build_upstream_head(relay, merge_route(relay.target, []), upgrade=True).decode()
        assert "Host: api.test\r\n" in raw
        assert "Connection: Upgrade\r\nUpgrade: websocket\r\n" in raw
        assert "Sec-WebSocket-Key: k" in raw


class TestResponseHead:
    def test_parse(self):
        head = parse_response_head(b"HTTP/1.1 404 Not Found\r\nContent-Type: text/plain\r\nSet-Cookie: a=1\r\nSet-Cookie: b=2")
        assert head.status == 404
        assert head.reason == "Not Found"
        assert head.headers.get_all("set-cookie") == ["a=1", "b=2"]

    def test_obs_fold_is_joined(self):
        head = parse_response_head(b"HTTP/1.1 200 OK\r\nX-Long: part1\r\n  part2")
        assert head.headers.get("x-long") == "part1 part2"

    def test_missing_reason(self):
        assert parse_response_head(b"HTTP/1.1 599").reason == ""

    def test_interim(self):
        assert parse_response_head(b"HTTP/1.1 103 Early Hints").is_interim
        assert not parse_response_head(b"HTTP/1.1 101 Switching Protocols").is_interim

    @pytest.mark.parametrize("raw", [b"garbage", b"HTTP/1.1 abc OK", b"HTTP/1.1 200 OK\r\nno-colon"])
    def test_malformed(self, raw):
        with pytest.raises(UpstreamError):
            parse_response_head(raw)

    @pytest.mark.asyncio
    async def test_hang_up_before_response(self):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        with pytest.raises(UpstreamError, match="socket hang up"):
            await read_response_head(reader)

    def test_relay_headers(self):
        head = parse_response_head(
            b"HTTP/1.1 200 OK\r\nConnection: keep-alive\r\nKeep-Alive: timeout=5\r\nVary: Origin"
        )
        headers = build_relay_response_headers(head)
        assert headers.get_all("connection") == ["close"]
        assert not headers.has("keep-alive")
        assert headers.get("vary") == "Origin"
        assert headers.get("access-control-allow-origin") == "*"

    def test_bodyless_responses(self):
        assert not response_has_body("HEAD", 200)
        assert not response_has_body("GET", 204)
        assert not response_has_body("GET", 304)
        assert response_has_body("GET", 404)


# -- Handler --

def client_reader(raw: bytes, eof: bool = False) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(raw)
    if eof:
        reader.feed_eof()
    return reader


def upstream_pair(response: bytes = None):
    reader = asyncio.StreamReader()
    if response is not None:
        reader.feed_data(response)
        reader.feed_eof()
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.is_closing.return_value = False
    return reader, writer


async def run_handler(raw, mock_writer, config, upstream=None, eof=False):
    events = []
    handler = Http11GatewayHandler(
        client_reader(raw, eof), mock_writer, config, lambda lvl, msg: events.append((lvl, msg))
    )
    conn = None
    if upstream is None:
        await handler.run()
    else:
        with patch.object(Http11GatewayHandler, "_connect_upstream", new=AsyncMock(return_value=upstream)) as conn:
            await handler.run()
    return conn, events


def access_records(events):
    return [m for lvl, m in events if lvl == "ACCESS" and isinstance(m, RelayRecord)]


@pytest.mark.asyncio
async def test_relay_round_trip(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(b"HTTP/1.1 201 Created\r\nContent-Length: 2\r\nX-Up: 1\r\n\r\nok")
    raw = b"GET /proxy?target=http%3A%2F%2Fapi.test%2Fdata%3Fa%3D1&b=2 HTTP/1.1\r\nHost: gw:3000\r\n\r\n"
    conn, events = await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))

    conn.assert_awaited_once_with("api.test", 80, False)
    sent_up = written(u_w).decode()
    assert sent_up.startswith("GET /data?a=1&b=2 HTTP/1.1\r\nHost: api.test\r\n")

    status, lines, body = split_response(written(mock_writer))
    assert status == 201
    assert "X-Up: 1" in lines
    assert "Access-Control-Allow-Origin: *" in lines
    assert body == b"ok"

    rec = access_records(events)[0]
    assert rec.status == 201
    assert rec.state is RelayState.DONE
    assert rec.bytes_sent == 2
    assert rec.target == "http://api.test/data?a=1"


@pytest.mark.asyncio
async def test_post_body_is_forwarded(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n")
    raw = (b"POST /proxy?target=http://api.test/items HTTP/1.1\r\nHost: gw\r\n"
           b"Content-Type: application/json\r\nContent-Length: 13\r\n\r\n{\"name\":\"x\"}\n")
    await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))
    sent_up = written(u_w)
    assert b"Content-Length: 13\r\n" in sent_up
    assert sent_up.endswith(b"\r\n\r\n{\"name\":\"x\"}\n")


@pytest.mark.asyncio
async def test_missing_target_is_400(mock_writer, gateway_config):
    _, events = await run_handler(b"GET /proxy HTTP/1.1\r\nHost: gw\r\n\r\n", mock_writer, gateway_config, eof=True)
    status, lines, body = split_response(written(mock_writer))
    assert status == 400
    assert json.loads(body) == {"error": "Missing target parameter"}
    assert access_records(events)[0].state is RelayState.ERROR


@pytest.mark.asyncio
async def test_preflight_is_answered_locally(mock_writer, gateway_config):
    raw = (b"OPTIONS /proxy HTTP/1.1\r\nHost: gw\r\nAccess-Control-Request-Method: PUT\r\n"
           b"Access-Control-Request-Headers: x-api-key, content-type\r\n\r\n")
    with patch.object(Http11GatewayHandler, '_connect_upstream', new=AsyncMock()) as conn:
        await run_handler(raw, mock_writer, gateway_config, eof=True)
        conn.assert_not_called()
    status, lines, body = split_response(written(mock_writer))
    assert status == 204
    assert body == b""
    assert "Access-Control-Allow-Origin: *" in lines
    assert "Access-Control-Allow-Methods: GET,HEAD,PUT,PATCH,POST,DELETE" in lines
    assert "Access-Control-Allow-Headers: x-api-key, content-type" in lines


@pytest.mark.asyncio
async def test_local_routes(mock_writer, gateway_config):
    raw = (b"GET /api/health HTTP/1.1\r\nHost: gw\r\n\r\n"
           b"GET /api/hello HTTP/1.1\r\nHost: gw\r\n\r\n"
           b"GET /unknown HTTP/1.1\r\nHost: gw\r\n\r\n")
    _, events = await run_handler(raw, mock_writer, gateway_config, eof=True)
    responses = written(mock_writer).split(b"HTTP/1.1 ")[1:]
    assert [r.split(b" ", 1)[0] for r in responses] == [b"200", b"200", b"404"]
    assert b'"status": "healthy"' in responses[0]
    assert b'"Hello from proxy API!"' in responses[1]
    assert b'{"error": "Endpoint not found"}' in responses[2]
    assert [r.status for r in access_records(events)] == [200, 200, 404]


@pytest.mark.asyncio
async def test_malformed_request_line(mock_writer, gateway_config):
    await run_handler(b"NONSENSE\r\n\r\n", mock_writer, gateway_config, eof=True)
    assert written(mock_writer).startswith(b"HTTP/1.1 400 ")
    mock_writer.close.assert_called()


@pytest.mark.asyncio
async def test_unsupported_transfer_encoding_rejected(mock_writer, gateway_config):
    raw = b"POST /proxy?target=http://a.test/ HTTP/1.1\r\nHost: gw\r\nTransfer-Encoding: gzip\r\n\r\n"
    await run_handler(raw, mock_writer, gateway_config, eof=True)
    assert written(mock_writer).startswith(b"HTTP/1.1 400 ")


@pytest.mark.asyncio
async def test_connect_failure_is_502(mock_writer, gateway_config):
    raw = b"GET /proxy?target=http://down.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    with patch.object(Http11GatewayHandler, '_connect_upstream',
                      new=AsyncMock(side_effect=UpstreamError("connect ECONNREFUSED down.test:80"))):
        _, events = await run_handler(raw, mock_writer, gateway_config)
    status, _, body = split_response(written(mock_writer))
    assert status == 502
    assert json.loads(body) == {
        "error": "Proxy error", "message": "connect ECONNREFUSED down.test:80", "target": "http://down.test/"
    }
    assert access_records(events)[0].state is RelayState.ERROR


@pytest.mark.asyncio
async def test_deadline_maps_to_502(mock_writer):
    config = GatewayConfig(host="127.0.0.1", port=0, relay_timeout=0.1)
    u_r, u_w = upstream_pair()  # never answers
    raw = b"GET /proxy?target=http://slow.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    await run_handler(raw, mock_writer, config, (u_r, u_w))
    status, _, body = split_response(written(mock_writer))
    assert status == 502
    assert "timed out" in json.loads(body)["message"]
    u_w.close.assert_called()


@pytest.mark.asyncio
async def test_caller_hang_up_cancels_relay(mock_writer, gateway_config):
    u_r, u_w = upstream_pair()  # never answers
    raw = b"GET /proxy?target=http://slow.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    _, events = await asyncio.wait_for(
        run_handler(raw, mock_writer, gateway_config, (u_r, u_w), eof=True), timeout=1.0
    )
    assert written(mock_writer) == b""
    assert access_records(events)[0].state is RelayState.ERROR
    u_w.close.assert_called()


@pytest.mark.asyncio
async def test_truncated_response_aborts_caller(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\npartial")
    raw = b"GET /proxy?target=http://api.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    _, events = await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))
    out = written(mock_writer)
    assert out.startswith(b"HTTP/1.1 200 OK")
    assert b"Proxy error" not in out
    mock_writer.transport.abort.assert_called_once()
    assert access_records(events)[0].state is RelayState.ERROR


@pytest.mark.asyncio
async def test_interim_responses_are_forwarded(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(
        b"HTTP/1.1 103 Early Hints\r\nLink: </a.css>; rel=preload\r\n\r\n"
        b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok"
    )
    raw = b"GET /proxy?target=http://api.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))
    out = written(mock_writer)
    assert out.startswith(b"HTTP/1.1 103 Early Hints\r\nLink: </a.css>; rel=preload\r\n\r\nHTTP/1.1 200 OK")
    assert out.endswith(b"ok")


def test_route_normalization():
    assert normalize_route("/proxy/") == "/proxy"
    assert normalize_route("/PROXY") == "/proxy"
    assert normalize_route("/Api/Health/") == "/api/health"
    assert normalize_route("") == "/"
    assert normalize_route("/") == "/"


@pytest.mark.asyncio
async def test_relay_route_accepts_trailing_slash_and_case(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok")
    raw = b"GET /Proxy/?target=http://api.test/ HTTP/1.1\r\nHost: gw\r\n\r\n"
    conn, events = await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))
    conn.assert_awaited_once()
    status, _, body = split_response(written(mock_writer))
    assert (status, body) == (200, b"ok")
    assert access_records(events)[0].path == "/proxy"


@pytest.mark.asyncio
async def test_request_line_is_ascii_for_unicode_targets(mock_writer, gateway_config):
    u_r, u_w = upstream_pair(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n")
    raw = (b"GET /proxy?target=http%3A%2F%2Fb%C3%BCcher.example%2F%25E4%25B8%25AD%2Fcaf%C3%A9%3Fq%3D%E4%B8%AD"
           b"&extra=%C3%A9 HTTP/1.1\r\nHost: gw\r\n\r\n")
    conn, _ = await run_handler(raw, mock_writer, gateway_config, (u_r, u_w))
    conn.assert_awaited_once_with("xn--bcher-kva.example", 80, False)
    request_line, host_line = written(u_w).split(b"\r\n")[:2]
    assert request_line == b"GET /%E4%B8%AD/caf%C3%A9?q=%E4%B8%AD&extra=%C3%A9 HTTP/1.1"
    assert host_line == b"Host: xn--bcher-kva.example"
