import pytest
import pytest_asyncio

from flow_errors import HttpNetworkError, HttpTimeoutError
from flow_models import StepStatus
from flow_runner import FlowOrchestrator, Metrics
from http_client import AiohttpClient
from session_state import SessionState
from step_executor import StepExecutor
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, hits, requests = await create_mock_server()
    yield {'base_url': base_url, 'hits': hits, 'requests': requests}
    await shutdown_mock_server(runner)


@pytest_asyncio.fixture
async def client():
    http_client = AiohttpClient()
    yield http_client
    await http_client.close()


@pytest.mark.asyncio
async def test_json_request_and_response(client, mock_server):
    resp = await client.send("POST", f"{mock_server['base_url']}/echo", {"Authorization": "Bearer x"},
                             {"name": "alice"}, 5000)
    assert resp.status == 200
    assert resp.body["json"] == {"name": "alice"}
    assert resp.body["authorization"] == "Bearer x"
    assert resp.body["contentType"].startswith("application/json")
    assert resp.latencyMs >= 0


@pytest.mark.asyncio
async def test_json_string_body_with_json_content_type(client, mock_server):
    resp = await client.send("PUT", f"{mock_server['base_url']}/echo", {"content-type": "application/json"},
                             '{"n": 1}', 5000)
    assert resp.body["json"] == {"n": 1}


@pytest.mark.asyncio
async def test_text_and_empty_bodies(client, mock_server):
    text = await client.send("GET", f"{mock_server['base_url']}/text", {}, None, 5000)
    assert text.body == "plain body"
    assert text.headers["Content-Type"].startswith("text/plain")

    empty = await client.send("GET", f"{mock_server['base_url']}/empty", {}, None, 5000)
    assert empty.status == 204
    assert empty.body is None


@pytest.mark.asyncio
async def test_error_status_is_a_response(client, mock_server):
    resp = await client.send("GET", f"{mock_server['base_url']}/status/503", {}, None, 5000)
    assert resp.status == 503
    assert resp.body == {"status": 503}


@pytest.mark.asyncio
async def test_relative_url_joined_onto_base_url(mock_server):
    async with AiohttpClient(mock_server["base_url"] + "/") as http_client:
        resp = await http_client.send("GET", "/ping", {}, None, 5000)
    assert resp.status == 200
    assert mock_server["hits"]["/ping"] == 1


@pytest.mark.asyncio
async def test_connection_refused_is_network_error(client):
    with pytest.raises(HttpNetworkError):
        await client.send("GET", "http://127.0.0.1:1/nothing", {}, None, 5000)


@pytest.mark.asyncio
async def test_malformed_url_is_network_error(client):
    with pytest.raises(HttpNetworkError):
        await client.send("GET", "/relative-without-base", {}, None, 5000)


@pytest.mark.asyncio
async def test_slow_response_is_timeout(client, mock_server):
    with pytest.raises(HttpTimeoutError):
        await client.send("GET", f"{mock_server['base_url']}/slow?seconds=2", {}, None, 100)


@pytest.mark.asyncio
async def test_login_flow_against_live_server(client, mock_server):
    session = SessionState("e2e", environment={"base": mock_server["base_url"]})
    session.set_flow_inputs({"user": "alice"})
    metrics = Metrics()
    flow = {
        "name": "login-then-profile",
        "steps": [
            {"id": "login", "name": "Login", "method": "POST", "url": "{{env.base}}/login",
             "headers": {"Content-Type": "application/json"}, "body": {"user": "{{input.user}}"}},
            {"id": "profile", "name": "Profile", "method": "GET",
             "url": "{{env.base}}/users/{{login.body.user.id}}",
             "headers": {"Authorization": "Bearer {{login.body.token}}",
                         "X-Session": "{{login.headers.x-session-id}}"}},
            {"id": "order", "name": "Order", "method": "POST", "url": "{{env.base}}/echo",
             "body": {"sku": "{{profile.body.items[1].sku}}", "status": "{{profile.status}}"}},
        ],
        "config": {"parallel": True, "maxConcurrency": 3},
    }

    result = await FlowOrchestrator(StepExecutor(client), metrics=metrics).run(flow, session)

    assert result.success, result.model_dump()
    assert result.statuses() == {"login": StepStatus.COMPLETED, "profile": StepStatus.COMPLETED,
                                 "order": StepStatus.COMPLETED}
    assert result.outcome("order").result.body["json"] == {"sku": "b-2", "status": "200"}
    profile_request = next(r for r in mock_server["requests"] if r["path"] == "/users/42")
    assert profile_request["headers"]["X-Session"] == "sess-1"
    assert (await metrics.as_dict())["total_requests"] == 3


@pytest.mark.asyncio
async def test_step_timeout_against_live_server(client, mock_server):
    session = SessionState(environment={"base": mock_server["base_url"]})
    flow = {"name": "slow", "steps": [
        {"id": "wait", "name": "Wait", "method": "GET", "url": "{{env.base}}/slow?seconds=2", "timeoutMs": 100},
    ]}
    result = await FlowOrchestrator(StepExecutor(client)).run(flow, session)
    assert result.outcome("wait").status == StepStatus.TIMED_OUT
    assert result.outcome("wait").result.status == 598
