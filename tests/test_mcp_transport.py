"""
End-to-end transport tests: framing, one-response-per-id, concurrency,
timeouts and shutdown draining.
"""

import io
import json
import threading
import time

from conftest import INITIALIZE, call_tool, notify, rpc

from proxybase.mcp.handlers import Dispatcher
from proxybase.mcp.registry import build_registry
from proxybase.mcp.server import McpServer
from proxybase.sdk.errors import BackendNotFoundError

API_KEY = "pk_live_0123456789"


def _by_id(responses):
    return {resp["id"]: resp for resp in responses}


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _manual_server(fake_client, **kwargs):
    output = io.BytesIO()
    server = McpServer(
        Dispatcher(build_registry(fake_client)),
        input_stream=io.BytesIO(b""),
        output_stream=output,
        **kwargs,
    )
    server.start()
    return server, output


def _lines(output):
    return [json.loads(raw) for raw in output.getvalue().decode("utf-8").splitlines()]


def test_initialize_then_register_agent(run_server):
    exit_code, out = run_server([
        INITIALIZE,
        notify("notifications/initialized"),
        call_tool(1, "register_agent"),
    ])

    assert exit_code == 0
    assert [resp["id"] for resp in out] == [0, 1]
    assert out[0]["result"]["protocolVersion"] == "2024-11-05"
    result = out[1]["result"]
    assert result["structuredContent"]["agent_id"]
    assert result["structuredContent"]["api_key"].startswith("pk_")
    assert result["isError"] is False
    assert all(resp["jsonrpc"] == "2.0" for resp in out)


def test_parse_error_yields_single_null_id_response(run_server):
    exit_code, out = run_server(["not-json"])

    assert exit_code == 0
    assert out == [{
        "jsonrpc": "2.0",
        "id": None,
        "error": {"code": -32700, "message": out[0]["error"]["message"]},
    }]


def test_bad_line_does_not_stop_the_loop(run_server):
    _, out = run_server(["{broken", INITIALIZE, rpc(1, "ping")])
    assert [resp["id"] for resp in out] == [None, 0, 1]


def test_notifications_produce_no_output(run_server):
    _, out = run_server([
        notify("notifications/initialized"),
        notify("notifications/cancelled", {"requestId": 1}),
        notify("notifications/whatever"),
        "",
    ])
    assert out == []


def test_inbound_responses_are_ignored(run_server):
    _, out = run_server(['{"jsonrpc":"2.0","id":99,"result":{}}'])
    assert out == []


def test_tools_call_before_initialize(run_server, fake_client):
    _, out = run_server([call_tool(1, "register_agent")])

    assert out[0]["error"]["code"] == -32600
    assert fake_client.calls == []


def test_unknown_method_and_tool(run_server):
    _, out = run_server([INITIALIZE, rpc(1, "resources/list"), call_tool(2, "rotate_proxy")])
    responses = _by_id(out)

    assert responses[1]["error"]["code"] == -32601
    assert responses[2]["error"]["code"] == -32602


def test_validation_error_makes_no_backend_call(run_server, fake_client):
    _, out = run_server([INITIALIZE, call_tool(1, "create_order", {"api_key": API_KEY})])

    error = _by_id(out)[1]["error"]
    assert error["code"] == -32602
    assert "package_id" in error["message"]
    assert fake_client.calls == []


def test_backend_error_surfaces_as_jsonrpc_error(run_server, fake_client):
    fake_client.errors["check_order_status"] = BackendNotFoundError("order not found", status_code=404)
    _, out = run_server([INITIALIZE, call_tool(1, "check_order_status", {"api_key": API_KEY, "order_id": "x"})])

    error = _by_id(out)[1]["error"]
    assert error["code"] == -32001
    assert error["data"]["kind"] == "not_found"
    assert error["data"]["status"] == 404


def test_string_and_integer_ids_are_distinct(run_server):
    _, out = run_server([INITIALIZE, call_tool(1, "register_agent"), call_tool("1", "register_agent")])

    ids = sorted(json.dumps(resp["id"]) for resp in out)
    assert ids == ['"1"', "0", "1"]


def test_tool_calls_run_concurrently(run_server, fake_client):
    barrier = threading.Barrier(2, timeout=5)
    fake_client.hooks["list_packages"] = barrier.wait
    fake_client.hooks["list_currencies"] = barrier.wait

    _, out = run_server(
        [
            INITIALIZE,
            call_tool(1, "list_packages", {"api_key": API_KEY}),
            call_tool(2, "list_currencies", {"api_key": API_KEY}),
        ],
        max_workers=4,
    )
    responses = _by_id(out)

    assert "result" in responses[1]
    assert "result" in responses[2]
    assert not barrier.broken


def test_fast_call_is_not_blocked_by_slow_call(fake_client):
    release = threading.Event()
    fake_client.hooks["check_order_status"] = lambda: release.wait(5)
    server, output = _manual_server(fake_client, max_workers=4)

    server.handle_line(INITIALIZE.encode("utf-8"))
    server.handle_line(call_tool(1, "check_order_status", {"api_key": API_KEY, "order_id": "o"}).encode("utf-8"))
    server.handle_line(call_tool(2, "list_packages", {"api_key": API_KEY}).encode("utf-8"))
    assert _wait_for(lambda: server.in_flight == 1)
    release.set()
    server.shutdown()

    assert [resp["id"] for resp in _lines(output)] == [0, 2, 1]


def test_slow_call_times_out_with_single_response(run_server, fake_client):
    release = threading.Event()
    fake_client.hooks["list_packages"] = lambda: release.wait(5)
    try:
        _, out = run_server(
            [INITIALIZE, call_tool(1, "list_packages", {"api_key": API_KEY})],
            call_timeout=0.2,
            shutdown_timeout=2.0,
        )
    finally:
        release.set()

    assert [resp["id"] for resp in out] == [0, 1]
    error = out[1]["error"]
    assert error["code"] == -32000
    assert error["data"]["cause"] == "timeout"


def test_late_result_after_timeout_is_dropped(fake_client):
    release = threading.Event()
    finished = threading.Event()

    def slow():
        release.wait(5)
        finished.set()

    fake_client.hooks["list_packages"] = slow
    server, output = _manual_server(fake_client, call_timeout=0.1)
    server.handle_line(INITIALIZE.encode("utf-8"))
    server.handle_line(call_tool(1, "list_packages", {"api_key": API_KEY}).encode("utf-8"))
    assert _wait_for(lambda: server.in_flight == 0)
    release.set()
    assert finished.wait(5)
    time.sleep(0.05)
    server.shutdown()

    out = _lines(output)
    assert [resp["id"] for resp in out] == [0, 1]
    assert out[1]["error"]["code"] == -32000


def test_duplicate_in_flight_id_is_rejected(fake_client):
    release = threading.Event()
    fake_client.hooks["list_packages"] = lambda: release.wait(5)
    server, output = _manual_server(fake_client)

    server.handle_line(INITIALIZE.encode("utf-8"))
    line = call_tool(5, "list_packages", {"api_key": API_KEY}).encode("utf-8")
    server.handle_line(line)
    server.handle_line(line)
    release.set()
    server.shutdown()

    out = [resp for resp in _lines(output) if resp["id"] == 5]
    assert len(out) == 2
    assert sorted("result" in resp for resp in out) == [False, True]
    error = next(resp for resp in out if "error" in resp)["error"]
    assert error["code"] == -32600
    assert fake_client.call_names().count("list_packages") == 1


def test_shutdown_abandons_calls_past_drain_budget(run_server, fake_client):
    release = threading.Event()
    fake_client.hooks["list_packages"] = lambda: release.wait(5)
    try:
        exit_code, out = run_server(
            [INITIALIZE, call_tool(1, "list_packages", {"api_key": API_KEY})],
            call_timeout=10.0,
            shutdown_timeout=0.2,
        )
    finally:
        release.set()

    assert exit_code == 0
    error = _by_id(out)[1]["error"]
    assert error["code"] == -32000
    assert error["data"]["cause"] == "shutdown"


def test_shutdown_waits_for_in_flight_calls(run_server, fake_client):
    fake_client.hooks["register_agent"] = lambda: time.sleep(0.2)

    _, out = run_server([INITIALIZE, call_tool(1, "register_agent")], shutdown_timeout=5.0)

    assert "result" in _by_id(out)[1]


def test_every_request_gets_exactly_one_response(run_server):
    lines = [INITIALIZE] + [
        call_tool(i, "list_currencies", {"api_key": API_KEY}) for i in range(1, 41)
    ]
    _, out = run_server(lines, max_workers=8)

    ids = [resp["id"] for resp in out]
    assert sorted(ids) == list(range(0, 41))


def test_closed_output_stops_server(fake_client):
    class _ClosedStream(io.BytesIO):
        def write(self, data):
            raise BrokenPipeError("peer gone")

    lines = (INITIALIZE + "\n" + rpc(1, "ping") + "\n").encode("utf-8")
    server = McpServer(
        Dispatcher(build_registry(fake_client)),
        input_stream=io.BytesIO(lines),
        output_stream=_ClosedStream(),
    )
    assert server.serve() == 0
    assert server.transport_closed.is_set()


def test_unpaired_surrogates_are_escaped_not_fatal(run_server):
    _, out = run_server([
        INITIALIZE,
        rpc("\ud800", "ping"),
        rpc(2, "ping"),
        rpc(3, "tools/list"),
        rpc(4, "bogus/\udfff"),
    ])

    assert [resp["id"] for resp in out] == [0, "\ud800", 2, 3, 4]
    assert out[1]["result"] == {}
    assert out[4]["error"]["code"] == -32601
    assert out[4]["error"]["message"] == "Method not found: bogus/\udfff"


def test_call_timed_out_in_queue_never_reaches_backend(fake_client):
    release = threading.Event()
    fake_client.hooks["list_packages"] = lambda: release.wait(5)
    server, output = _manual_server(fake_client, max_workers=1, call_timeout=0.2)

    server.handle_line(INITIALIZE.encode("utf-8"))
    server.handle_line(call_tool(1, "list_packages", {"api_key": API_KEY}).encode("utf-8"))
    server.handle_line(
        call_tool(2, "create_order", {"api_key": API_KEY, "package_id": "us_residential_1gb"}).encode("utf-8")
    )
    assert _wait_for(lambda: server.in_flight == 0)
    release.set()
    # single worker: once this runs, the queued create_order task has been taken too
    server.get_executor().submit(lambda: None).result(timeout=5)
    server.shutdown()

    responses = _by_id(_lines(output))
    assert responses[2]["error"]["code"] == -32000
    assert responses[2]["error"]["data"]["cause"] == "timeout"
    assert "create_order" not in fake_client.call_names()


def test_malformed_notifications_produce_no_output(run_server):
    _, out = run_server([
        '{"jsonrpc":"2.0","method":"notifications/initialized","extra":1}',
        '{"jsonrpc":"2.0","method":"notifications/cancelled","params":7}',
        '{"jsonrpc":"2.0","id":null,"method":"notifications/cancelled","params":"x"}',
    ])
    assert out == []


def test_malformed_request_with_id_is_still_answered(run_server):
    _, out = run_server(['{"jsonrpc":"2.0","id":8,"method":"ping","params":7}'])
    assert out[0]["id"] == 8
    assert out[0]["error"]["code"] == -32600
