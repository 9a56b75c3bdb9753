"""Tailscale VPN status and login, via the tailscale CLI."""

from __future__ import annotations

import json
from typing import Any

from ..errors import CommandError
from ..logging_config import get_logger
from . import _run, run_checked

logger = get_logger(__name__)

AUTH_KEY_PREFIX = "tskey-auth-"


def parse_status(raw: dict[str, Any]) -> dict[str, Any] | None:
    """Summarize `tailscale status --json`. None when the node isn't logged in."""
    me = raw.get("Self")
    if not me:
        return None

    peers = []
    exit_node = None
    for node_id, peer in (raw.get("Peer") or {}).items():
        hostname = peer.get("HostName") or peer.get("DNSName") or "unknown"
        if peer.get("ExitNode"):
            exit_node = hostname
        ips = peer.get("TailscaleIPs") or []
        peers.append(
            {
                "id": node_id,
                "hostname": hostname,
                "tailscaleIP": ips[0] if ips else "",
                "online": bool(peer.get("Online", False)),
            }
        )

    ips = me.get("TailscaleIPs") or []
    return {
        "online": bool(me.get("Online", False)),
        "tailscaleIP": ips[0] if ips else None,
        "hostname": me.get("HostName"),
        "tailnet": (raw.get("CurrentTailnet") or {}).get("Name") or me.get("TailnetName"),
        "peerCount": len(peers),
        "version": raw.get("Version"),
        "exitNode": exit_node,
        "peers": peers,
    }


class TailscaleHandler:
    async def status(self) -> dict[str, Any] | None:
        rc, stdout, stderr = await _run("tailscale", "status", "--json")
        if rc != 0 and not stdout.strip():
            logger.info(f"tailscale status unavailable: {stderr.strip()}")
            return None
        try:
            return parse_status(json.loads(stdout))
        except json.JSONDecodeError as e:
            logger.warning(f"tailscale status returned invalid JSON: {e}")
            return None

    async def is_connected(self) -> bool:
        status = await self.status()
        return bool(status and status["online"])

    async def connect(self, auth_key: str) -> None:
        if not auth_key or not isinstance(auth_key, str):
            raise ValueError("Auth key is required")
        if not auth_key.startswith(AUTH_KEY_PREFIX):
            raise ValueError(f"Invalid auth key format (must start with {AUTH_KEY_PREFIX})")

        logger.info("Running: tailscale up --authkey=<redacted> --accept-routes")
        try:
            await run_checked("tailscale", "up", f"--authkey={auth_key}", "--accept-routes")
        except CommandError as e:
            # argv holds the key; don't let it reach the hub or the logs
            raise CommandError(["tailscale", "up"], e.returncode, e.stderr) from None
        if not await self.is_connected():
            raise RuntimeError("Tailscale did not come online")

    async def disconnect(self) -> None:
        await run_checked("tailscale", "down")
        if await self.is_connected():
            raise RuntimeError("Failed to disconnect from Tailscale")
