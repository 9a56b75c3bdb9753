"""Workspace resource usage."""

from __future__ import annotations

import asyncio
from typing import Any

import psutil


class StatsHandler:
    def __init__(self, disk_path: str = "/"):
        self.disk_path = disk_path
        # Prime the counter so the first real sample has a baseline
        psutil.cpu_percent(interval=None)

    def _sample(self) -> dict[str, Any]:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self.disk_path)
        return {
            "cpu": round(psutil.cpu_percent(interval=None), 1),
            "memory": {
                "used": round((memory.total - memory.available) / 1024**2),
                "total": round(memory.total / 1024**2),
                "percentage": round(memory.percent, 1),
            },
            "disk": {
                "used": round(disk.used / 1024**3, 1),
                "total": round(disk.total / 1024**3, 1),
                "percentage": round(disk.percent, 1),
            },
        }

    async def stats(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._sample)
