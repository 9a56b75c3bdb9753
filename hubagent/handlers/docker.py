"""Docker containers visible from the workspace, via the docker CLI."""

from __future__ import annotations

import json
import re
from typing import Any

from ..logging_config import get_logger
from . import run_checked

logger = get_logger(__name__)

VALID_STATES = ("running", "exited", "paused", "restarting", "created", "dead")

_CONTAINER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_PORT_RE = re.compile(r"(?:(\d+\.\d+\.\d+\.\d+)|:::?):(\d+)->(\d+)/(tcp|udp)")


def normalize_state(state: str | None) -> str:
    normalized = (state or "").lower()
    return normalized if normalized in VALID_STATES else "dead"


def parse_ports(ports: str) -> list[dict[str, Any]]:
    """Published ports from docker's `Ports` column, e.g. '0.0.0.0:8080->80/tcp, :::8080->80/tcp'."""
    result = []
    for mapping in (p.strip() for p in ports.split(",")):
        match = _PORT_RE.search(mapping)
        if match:
            result.append(
                {
                    "hostIp": match.group(1) or "0.0.0.0",
                    "hostPort": int(match.group(2)),
                    "containerPort": int(match.group(3)),
                    "protocol": match.group(4),
                }
            )
    return result


def parse_ps(output: str) -> list[dict[str, Any]]:
    """Parse `docker ps -a --format '{{json .}}'` (one JSON object per line)."""
    containers = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping unparseable docker ps line: {e}")
            continue
        containers.append(
            {
                "id": raw.get("ID", ""),
                "name": raw.get("Names", ""),
                "image": raw.get("Image", ""),
                "state": normalize_state(raw.get("State")),
                "status": raw.get("Status", ""),
                "ports": parse_ports(raw.get("Ports") or ""),
                "createdAt": raw.get("CreatedAt", ""),
            }
        )
    return containers


def validate_container_id(container_id: str) -> str:
    if not isinstance(container_id, str) or not _CONTAINER_ID_RE.match(container_id):
        raise ValueError("Invalid container ID")
    return container_id


class DockerHandler:
    async def containers(self) -> dict[str, Any]:
        output = await run_checked("docker", "ps", "-a", "--format", "{{json .}}", timeout=10)
        return {"containers": parse_ps(output)}

    async def logs(self, container_id: str, tail: int = 100) -> dict[str, str]:
        container_id = validate_container_id(container_id)
        output = await run_checked("docker", "logs", "--tail", str(int(tail)), container_id, timeout=30)
        return {"containerId": container_id, "logs": output}

    async def start(self, container_id: str) -> None:
        await run_checked("docker", "start", validate_container_id(container_id), timeout=30)

    async def stop(self, container_id: str) -> None:
        await run_checked("docker", "stop", validate_container_id(container_id), timeout=30)

    async def restart(self, container_id: str) -> None:
        await run_checked("docker", "restart", validate_container_id(container_id), timeout=60)
