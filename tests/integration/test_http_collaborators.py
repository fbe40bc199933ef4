"""
HTTP collaborator clients exercised against httpx.MockTransport.
"""
import json

import httpx
import pytest

from selfheal.app.core.config import Settings
from selfheal.app.schemas.collaborators import ApprovalRequest, HealthTarget, Sandbox
from selfheal.app.services.coder_executor import CoderExecutionProvider, SandboxError, workspace_name
from selfheal.app.services.collaborator_factory import build_default_collaborators
from selfheal.app.services.context_provider import HttpContextProvider
from selfheal.app.services.health_verifier import HttpHealthVerifier
from selfheal.app.services.llm_adapter import LLMAdapterConfig, OnPremAdapter
from selfheal.app.services.pagerduty_notifier import PagerDutyNotifier
from selfheal.app.services.slack_notifier import (
    APPROVE_ACTION,
    REJECT_ACTION,
    SlackAPIError,
    SlackApprovalNotifier,
)


class Recorder:
    """MockTransport handler that records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"message": f"no route {key}"})
        return handler(request) if callable(handler) else handler

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def bodies(self, method, path):
        return [json.loads(r.content) for r in self.requests if (r.method, r.url.path) == (method, path)]


# ── context provider ─────────────────────────────────────────────────────────


async def test_context_search():
    recorder = Recorder({("POST", "/kb/search"): httpx.Response(200, json={
        "results": [
            {"title": "Pool runbook", "content": "recycle", "score": 0.9},
            {"title": "Other", "content": "x", "score": 0.4},
        ],
    })})
    provider = HttpContextProvider("http://ctx/kb/", token="t0k", transport=recorder.transport())

    results = await provider.search("pool exhausted", {"service": "inventory", "failure_tags": []}, limit=3)

    assert results.max_score == pytest.approx(0.9)
    assert [r.title for r in results.results] == ["Pool runbook", "Other"]
    assert recorder.bodies("POST", "/kb/search") == [
        {"query": "pool exhausted", "filters": {"service": "inventory"}, "limit": 3}
    ]
    assert recorder.requests[0].headers["Authorization"] == "Bearer t0k"


async def test_context_search_accepts_camel_case_max_score():
    recorder = Recorder({("POST", "/search"): httpx.Response(200, json={"results": [], "maxScore": 0.2})})
    results = await HttpContextProvider("http://ctx", transport=recorder.transport()).search("q", {})
    assert results.max_score == pytest.approx(0.2)
    assert "Authorization" not in recorder.requests[0].headers


async def test_context_search_http_error():
    recorder = Recorder({("POST", "/search"): httpx.Response(503)})
    with pytest.raises(httpx.HTTPStatusError):
        await HttpContextProvider("http://ctx", transport=recorder.transport()).search("q", {})


async def test_context_ingest():
    recorder = Recorder({("POST", "/documents"): httpx.Response(201, json={"id": "doc-9"})})
    provider = HttpContextProvider("http://ctx", transport=recorder.transport())

    assert await provider.ingest("# doc", {"incident_id": "P1"}) == "doc-9"
    assert recorder.bodies("POST", "/documents") == [{"content": "# doc", "metadata": {"incident_id": "P1"}}]


# ── Coder execution ──────────────────────────────────────────────────────────


def test_workspace_name():
    assert workspace_name("P1ABC", now=1_700_000_000) == "remediation-p1abc-1700000000"
    long_name = workspace_name("Q" * 40, now=1_700_000_000)
    assert len(long_name) <= 32
    assert not long_name.endswith("-")


def _coder_routes(statuses, exec_results=None):
    statuses = list(statuses)
    exec_results = list(exec_results or [{"exit_code": 0}, {"exit_code": 0, "stdout": "pool recycled"}])

    def create(request):
        body = json.loads(request.content)
        return httpx.Response(201, json={"id": "ws-1", "name": body["name"]})

    def get_workspace(request):
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return httpx.Response(200, json={"latest_build": {
            "status": status,
            "resources": [{"agents": [{"id": "agent-1"}]}],
        }})

    def exec_command(request):
        return httpx.Response(200, json=exec_results.pop(0))

    return create, get_workspace, exec_command


def _coder(statuses, exec_results=None):
    create, get_workspace, exec_command = _coder_routes(statuses, exec_results)

    class CoderRecorder(Recorder):
        def __call__(self, request):
            self.requests.append(request)
            path = request.url.path
            if request.method == "POST" and path == "/api/v2/users/me/workspaces":
                return create(request)
            if request.method == "POST" and path.endswith("/builds"):
                return httpx.Response(201, json={})
            if request.method == "GET" and path.startswith("/api/v2/users/me/workspace/"):
                return get_workspace(request)
            if request.method == "POST" and path == "/api/v2/workspaceagents/agent-1/exec":
                return exec_command(request)
            return httpx.Response(404)

    recorder = CoderRecorder({})
    provider = CoderExecutionProvider(
        "http://coder", "secret", "tpl-1", ready_timeout=5, poll_interval=0, transport=recorder.transport()
    )
    return provider, recorder


async def test_coder_acquire_waits_for_build():
    provider, recorder = _coder(["pending", "starting", "running"])

    sandbox = await provider.acquire("P1", {"incident_id": "P1", "service": "inventory"})

    assert sandbox.sandbox_id == "ws-1"
    assert sandbox.name.startswith("remediation-p1-")
    create = json.loads(recorder.requests[0].content)
    assert create["template_id"] == "tpl-1"
    names = [p["name"] for p in create["rich_parameter_values"]]
    assert names == ["INCIDENT_ID", "CREATED_AT", "SERVICE"]
    assert recorder.requests[0].headers["Coder-Session-Token"] == "secret"
    assert sum(1 for r in recorder.requests if r.method == "GET") == 3


async def test_coder_failed_build_deletes_workspace():
    provider, recorder = _coder(["failed"])

    with pytest.raises(SandboxError):
        await provider.acquire("P1", {})

    deletes = [r for r in recorder.requests if r.url.path.endswith("/builds")]
    assert len(deletes) == 1
    assert json.loads(deletes[0].content) == {"transition": "delete"}


async def test_coder_run_writes_then_executes():
    provider, recorder = _coder(["running"])

    result = await provider.run(Sandbox(sandbox_id="ws-1", name="remediation-p1-1"), "print('hi')", "python")

    assert result.exit_code == 0
    assert result.stdout == "pool recycled"
    commands = [json.loads(r.content)["command"] for r in recorder.requests if r.url.path.endswith("/exec")]
    assert commands[0].startswith("cat > /tmp/remediation.py << 'REMEDIATION_EOF'\nprint('hi')\n")
    assert commands[1] == "python3 /tmp/remediation.py"


async def test_coder_run_stops_when_write_fails():
    provider, recorder = _coder(["running"], [{"exit_code": 1, "stderr": "disk full"}])

    result = await provider.run(Sandbox(sandbox_id="ws-1", name="n"), "echo hi", "bash")

    assert result.exit_code == 1
    assert result.stderr == "disk full"
    assert sum(1 for r in recorder.requests if r.url.path.endswith("/exec")) == 1


async def test_coder_release():
    provider, recorder = _coder(["running"])
    await provider.release(Sandbox(sandbox_id="ws-1", name="remediation-p1-1"))
    assert recorder.requests[0].url.path == "/api/v2/users/me/workspace/remediation-p1-1/builds"


# ── health verification ──────────────────────────────────────────────────────


async def test_health_verify_all_pass():
    recorder = Recorder({
        ("GET", "/health"): httpx.Response(200),
        ("GET", "/health/db"): httpx.Response(204),
    })
    verifier = HttpHealthVerifier(extra_paths=["db"], transport=recorder.transport())

    result = await verifier.verify(HealthTarget(incident_id="P1", health_check_url="http://svc/health"))

    assert result.success is True
    assert result.summary["passed"] == 2
    assert result.summary["total"] == 2


async def test_health_verify_reports_failures():
    recorder = Recorder({("GET", "/health"): httpx.Response(500)})
    verifier = HttpHealthVerifier(transport=recorder.transport())

    result = await verifier.verify(HealthTarget(incident_id="P1", health_check_url="http://svc/health"))

    assert result.success is False
    assert result.summary["failed_checks"][0]["status"] == 500


async def test_health_connection_error_is_a_failed_check():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    verifier = HttpHealthVerifier(transport=httpx.MockTransport(refuse))
    result = await verifier.probe(HealthTarget(incident_id="P1", health_check_url="http://svc/health"))

    assert result.success is False
    assert "connection refused" in result.summary["failed_checks"][0]["error"]


async def test_health_without_url():
    verifier = HttpHealthVerifier()
    target = HealthTarget(incident_id="P1")

    assert await verifier.probe(target) is None
    verified = await verifier.verify(target)
    assert verified.success is True
    assert verified.summary["skipped"] is True


# ── Slack ────────────────────────────────────────────────────────────────────


def _approval_request():
    return ApprovalRequest(
        incident_id="P1", title="Inventory API latency", hypothesis="pool leak", risk="MEDIUM",
        code="print('x')", reasoning="because", service="inventory-service",
    )


async def test_slack_posts_interactive_message():
    recorder = Recorder({("POST", "/api/chat.postMessage"): httpx.Response(
        200, json={"ok": True, "channel": "C123", "ts": "1700000000.000100"}
    )})
    notifier = SlackApprovalNotifier("xoxb-1", "incident-approvals", transport=recorder.transport())

    ref = await notifier.request_approval(_approval_request())

    assert ref == "C123:1700000000.000100"
    request = recorder.requests[0]
    assert request.headers["Authorization"] == "Bearer xoxb-1"
    body = json.loads(request.content)
    assert body["channel"] == "incident-approvals"
    buttons = body["blocks"][-1]["elements"]
    assert [(b["action_id"], b["value"]) for b in buttons] == [(APPROVE_ACTION, "P1"), (REJECT_ACTION, "P1")]


async def test_slack_ok_false_raises():
    recorder = Recorder({("POST", "/api/chat.postMessage"): httpx.Response(
        200, json={"ok": False, "error": "channel_not_found"}
    )})
    notifier = SlackApprovalNotifier("xoxb-1", "nope", transport=recorder.transport())

    with pytest.raises(SlackAPIError, match="channel_not_found"):
        await notifier.request_approval(_approval_request())


# ── PagerDuty ────────────────────────────────────────────────────────────────


async def test_pagerduty_add_note():
    recorder = Recorder({("POST", "/incidents/P1/notes"): httpx.Response(201, json={"note": {}})})
    notifier = PagerDutyNotifier("pd-key", "bot@example.com", transport=recorder.transport())

    await notifier.add_note("P1", "resolved automatically")

    request = recorder.requests[0]
    assert request.headers["Authorization"] == "Token token=pd-key"
    assert request.headers["From"] == "bot@example.com"
    assert json.loads(request.content) == {"note": {"content": "resolved automatically"}}


# ── on-prem LLM ──────────────────────────────────────────────────────────────


async def test_onprem_adapter_completion():
    recorder = Recorder({("POST", "/v1/completions"): httpx.Response(200, json={"choices": [{"text": "{}"}]})})
    adapter = OnPremAdapter(
        LLMAdapterConfig(provider="on-prem", model_name="llama3", endpoint_url="http://llm"),
        transport=recorder.transport(),
    )

    response = await adapter.generate("fix it", system_prompt="be careful")

    assert response.text == "{}"
    assert response.provider == "on-prem"
    assert len(response.prompt_hash) == 16
    body = json.loads(recorder.requests[0].content)
    assert body["model"] == "llama3"
    assert body["prompt"] == "be careful\n\nfix it"


# ── wiring from settings ─────────────────────────────────────────────────────


def test_default_collaborators_from_full_settings():
    settings = Settings(
        _env_file=None,
        context_api_url="http://ctx",
        reasoning_provider="on-prem",
        coder_api_url="http://coder",
        coder_api_token="t",
        coder_template_id="tpl",
        slack_bot_token="xoxb",
        pagerduty_api_key="pd",
    )
    collaborators = build_default_collaborators(settings)

    assert collaborators.missing() == []
    assert collaborators.knowledge is collaborators.context
    assert collaborators.preflight is collaborators.verification
    assert isinstance(collaborators.resolution, PagerDutyNotifier)


def test_default_collaborators_leave_unconfigured_roles_empty():
    collaborators = build_default_collaborators(Settings(_env_file=None, gemini_api_key=None, preflight_enabled=False))

    assert set(collaborators.missing()) == {"context", "reasoning", "execution", "approval"}
    assert collaborators.preflight is None
    assert collaborators.resolution is None
    assert collaborators.parser is not None
