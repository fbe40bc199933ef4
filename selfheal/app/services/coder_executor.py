"""
Sandboxed execution on Coder workspaces.

acquire() creates a workspace from the remediation template and waits for its
build; run() writes the script through the workspace agent and executes it;
release() triggers the delete build.
"""
import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from selfheal.app.core.logging import get_logger
from selfheal.app.schemas.collaborators import ExecutionResult, Sandbox

logger = get_logger(__name__)

READY_STATES = {"succeeded", "running"}
FAILED_STATES = {"failed", "canceled"}
MAX_NAME_LENGTH = 32

SCRIPT_FILES = {"python": ("remediation.py", "python3"), "bash": ("remediation.sh", "bash")}


class SandboxError(Exception):
    pass


def workspace_name(incident_id: str, now: Optional[float] = None) -> str:
    stamp = int(now if now is not None else time.time())
    slug = re.sub(r"[^a-z0-9-]+", "-", incident_id.lower()).strip("-")
    return f"remediation-{slug}-{stamp}"[:MAX_NAME_LENGTH].rstrip("-")


class CoderExecutionProvider:
    def __init__(self, base_url: str, token: str, template_id: str, ready_timeout: float = 300.0,
                 poll_interval: float = 5.0, command_timeout: int = 300,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.template_id = template_id
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Coder-Session-Token": self.token, "Content-Type": "application/json"},
            timeout=60.0,
            transport=self._transport,
        )

    async def acquire(self, incident_id: str, parameters: Dict[str, str]) -> Sandbox:
        name = workspace_name(incident_id)
        rich_params = [
            {"name": "INCIDENT_ID", "value": incident_id},
            {"name": "CREATED_AT", "value": datetime.now(timezone.utc).isoformat()},
        ]
        rich_params += [{"name": k.upper(), "value": str(v)} for k, v in (parameters or {}).items()
                        if k != "incident_id"]

        async with self._client() as client:
            resp = await client.post("/api/v2/users/me/workspaces", json={
                "template_id": self.template_id,
                "name": name,
                "rich_parameter_values": rich_params,
            })
            resp.raise_for_status()
            workspace = resp.json()
            sandbox = Sandbox(sandbox_id=workspace["id"], name=workspace["name"])
            logger.info(f"Coder workspace created: {sandbox.name}")

            try:
                await self._wait_until_ready(client, sandbox.name)
            except BaseException:
                try:
                    await self._delete(client, sandbox.name)
                except Exception as e:
                    logger.error(f"Failed to delete workspace {sandbox.name} after failed build: {e}")
                raise
        return sandbox

    async def _wait_until_ready(self, client: httpx.AsyncClient, name: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.ready_timeout
        while True:
            workspace = await self._get_workspace(client, name)
            status = (workspace.get("latest_build") or {}).get("status")
            logger.debug(f"Workspace {name} build status: {status}")
            if status in READY_STATES:
                return workspace
            if status in FAILED_STATES:
                raise SandboxError(f"Workspace {name} build {status}")
            if time.monotonic() >= deadline:
                raise SandboxError(f"Workspace {name} not ready after {self.ready_timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def _get_workspace(self, client: httpx.AsyncClient, name: str) -> Dict[str, Any]:
        resp = await client.get(f"/api/v2/users/me/workspace/{name}")
        resp.raise_for_status()
        return resp.json()

    async def run(self, sandbox: Sandbox, code: str, language: str) -> ExecutionResult:
        filename, interpreter = SCRIPT_FILES.get(language, SCRIPT_FILES["bash"])
        async with self._client() as client:
            workspace = await self._get_workspace(client, sandbox.name)
            agents: List[Dict[str, Any]] = [
                agent
                for resource in (workspace.get("latest_build") or {}).get("resources") or []
                for agent in resource.get("agents") or []
            ]
            if not agents:
                raise SandboxError(f"No agents found in workspace {sandbox.name}")
            agent_id = agents[0]["id"]

            write = await self._exec(
                client, agent_id, f"cat > /tmp/{filename} << 'REMEDIATION_EOF'\n{code}\nREMEDIATION_EOF"
            )
            if write.exit_code != 0:
                return write
            result = await self._exec(client, agent_id, f"{interpreter} /tmp/{filename}")

        logger.info(
            f"Remediation executed in {sandbox.name}",
            extra={"extra_data": {"exit_code": result.exit_code, "stdout_length": len(result.stdout)}},
        )
        return result

    async def _exec(self, client: httpx.AsyncClient, agent_id: str, command: str) -> ExecutionResult:
        resp = await client.post(
            f"/api/v2/workspaceagents/{agent_id}/exec",
            json={"command": command, "timeout": self.command_timeout},
        )
        resp.raise_for_status()
        data = resp.json()
        return ExecutionResult(
            exit_code=data.get("exit_code") or 0,
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
        )

    async def release(self, sandbox: Sandbox) -> None:
        async with self._client() as client:
            await self._delete(client, sandbox.name)

    async def _delete(self, client: httpx.AsyncClient, name: str) -> None:
        resp = await client.post(f"/api/v2/users/me/workspace/{name}/builds", json={"transition": "delete"})
        resp.raise_for_status()
        logger.info(f"Workspace deletion initiated: {name}")
