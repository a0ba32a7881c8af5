"""Tests for the loopback OAuth callback listener."""
import asyncio
import logging
import socket
import types

import httpx
import pytest
import pytest_asyncio

from codeassist_auth import callback_server
from codeassist_auth.callback_server import CallbackListener, CallbackParams
from codeassist_auth.errors import (
    CallbackTimeout,
    FlowSuperseded,
    ListenerStopped,
    MissingParameters,
    ProviderDenied,
    StateMismatch,
)


@pytest.fixture
def listener():
    return CallbackListener(port=0)


@pytest_asyncio.fixture
async def client(listener):
    transport = httpx.ASGITransport(app=listener.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as c:
        yield c


async def _register(listener, state: str, timeout: float = 5) -> asyncio.Task:
    task = asyncio.create_task(listener.wait_for_callback(state, timeout=timeout))
    await asyncio.sleep(0)
    assert listener.has_pending_flow
    return task


@pytest.mark.asyncio
async def test_valid_callback_resolves_pending_flow(listener, client):
    waiter = await _register(listener, "expected-state")
    r = await client.get("/oauth-callback", params={"code": "abc123", "state": "expected-state"})
    assert r.status_code == 200
    assert "Authentication Successful" in r.text
    assert await waiter == CallbackParams(code="abc123", state="expected-state")
    assert not listener.has_pending_flow


@pytest.mark.asyncio
async def test_state_mismatch_rejects_and_does_not_resolve(listener, client):
    waiter = await _register(listener, "expected-state")
    r = await client.get("/oauth-callback", params={"code": "abc123", "state": "forged-state"})
    assert r.status_code == 400
    assert "State mismatch" in r.text
    with pytest.raises(StateMismatch):
        await waiter
    assert not listener.has_pending_flow


@pytest.mark.asyncio
async def test_provider_error_rejects_with_error_verbatim(listener, client):
    waiter = await _register(listener, "expected-state")
    r = await client.get("/oauth-callback", params={"error": "access_denied", "state": "expected-state"})
    assert r.status_code == 400
    assert "access_denied" in r.text
    with pytest.raises(ProviderDenied) as exc_info:
        await waiter
    assert exc_info.value.error == "access_denied"
    assert str(exc_info.value) == "OAuth error: access_denied"


@pytest.mark.asyncio
async def test_provider_error_is_html_escaped(listener, client):
    r = await client.get("/oauth-callback", params={"error": "<script>alert(1)</script>"})
    assert r.status_code == 400
    assert "<script>" not in r.text
    assert "&lt;script&gt;" in r.text


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"state": "expected-state"}, {"code": "abc123"}, {"code": "", "state": "expected-state"}])
async def test_missing_parameters_rejects(listener, client, params):
    waiter = await _register(listener, "expected-state")
    r = await client.get("/oauth-callback", params=params)
    assert r.status_code == 400
    assert "Missing code or state" in r.text
    with pytest.raises(MissingParameters):
        await waiter


@pytest.mark.asyncio
async def test_other_paths_are_404_and_leave_flow_pending(listener, client):
    waiter = await _register(listener, "expected-state")
    r = await client.get("/callback", params={"code": "abc123", "state": "expected-state"})
    assert r.status_code == 404
    assert listener.has_pending_flow
    assert not waiter.done()
    waiter.cancel()


@pytest.mark.asyncio
async def test_callback_without_pending_flow_has_no_effect(listener, client):
    r = await client.get("/oauth-callback", params={"code": "abc123", "state": "whatever"})
    assert r.status_code == 400
    assert not listener.has_pending_flow


@pytest.mark.asyncio
async def test_second_callback_after_completion_is_noop(listener, client):
    waiter = await _register(listener, "s")
    await client.get("/oauth-callback", params={"code": "c1", "state": "s"})
    r = await client.get("/oauth-callback", params={"code": "c2", "state": "s"})
    assert r.status_code == 400
    assert (await waiter).code == "c1"


@pytest.mark.asyncio
async def test_new_flow_supersedes_pending_flow(listener, client):
    first = await _register(listener, "first-state")
    second = await _register(listener, "second-state")
    with pytest.raises(FlowSuperseded):
        await first

    r = await client.get("/oauth-callback", params={"code": "abc123", "state": "second-state"})
    assert r.status_code == 200
    assert await second == CallbackParams(code="abc123", state="second-state")


@pytest.mark.asyncio
async def test_old_state_after_supersession_is_a_mismatch(listener, client):
    first = await _register(listener, "first-state")
    second = await _register(listener, "second-state")
    with pytest.raises(FlowSuperseded):
        await first
    await client.get("/oauth-callback", params={"code": "abc123", "state": "first-state"})
    with pytest.raises(StateMismatch):
        await second


@pytest.mark.asyncio
async def test_wait_times_out(listener):
    with pytest.raises(CallbackTimeout):
        await listener.wait_for_callback("expected-state", timeout=0.01)
    assert not listener.has_pending_flow


@pytest.mark.asyncio
async def test_cancelled_waiter_clears_pending_flow(listener):
    waiter = await _register(listener, "expected-state")
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert not listener.has_pending_flow


@pytest.mark.asyncio
async def test_start_serves_callbacks_over_http(listener):
    assert await listener.start() is True
    try:
        assert listener.is_running
        assert listener.port != 0
        # Second start is a no-op
        port = listener.port
        assert await listener.start() is True
        assert listener.port == port

        waiter = await _register(listener, "expected-state")
        async with httpx.AsyncClient(trust_env=False) as c:
            r = await c.get(
                f"http://127.0.0.1:{listener.port}/oauth-callback",
                params={"code": "abc123", "state": "expected-state"},
            )
        assert r.status_code == 200
        assert await waiter == CallbackParams(code="abc123", state="expected-state")
    finally:
        await listener.stop()
    assert not listener.is_running


@pytest.mark.asyncio
async def test_stop_rejects_pending_flow_and_is_idempotent(listener):
    assert await listener.start()
    waiter = await _register(listener, "expected-state")
    await listener.stop()
    with pytest.raises(ListenerStopped):
        await waiter
    await listener.stop()
    assert not listener.is_running


@pytest.mark.asyncio
async def test_start_reports_port_in_use():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        listener = CallbackListener(port=blocker.getsockname()[1])
        assert await listener.start() is False
        assert not listener.is_running
    finally:
        blocker.close()


def test_address_option_is_exclusive_on_windows(monkeypatch):
    monkeypatch.setattr(callback_server, "IS_WINDOWS", True)
    monkeypatch.setattr(socket, "SO_EXCLUSIVEADDRUSE", -5, raising=False)
    assert callback_server._address_option() == -5


def test_address_option_reuses_address_elsewhere(monkeypatch):
    monkeypatch.setattr(callback_server, "IS_WINDOWS", False)
    assert callback_server._address_option() == socket.SO_REUSEADDR


@pytest.mark.asyncio
async def test_stop_rejects_pending_flow_when_server_task_failed(listener, caplog):
    async def crashed():
        raise RuntimeError("serve crashed")

    listener._server = types.SimpleNamespace(should_exit=False)
    listener._serve_task = asyncio.create_task(crashed())
    waiter = await _register(listener, "expected-state")

    with caplog.at_level(logging.ERROR, logger="codeassist_auth.callback_server"):
        await listener.stop()
    with pytest.raises(ListenerStopped):
        await waiter
    assert "failed while stopping" in caplog.text
    assert not listener.is_running
