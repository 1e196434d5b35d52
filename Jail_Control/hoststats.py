"""Host resource snapshot, independent of the enforcement daemon."""

from __future__ import annotations

import asyncio
import os
import platform
import socket
import time
from typing import Any

import psutil


def collect_host_stats() -> dict[str, Any]:
    vm = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    try:
        load = list(os.getloadavg())
    except (AttributeError, OSError):
        load = []
    boot = psutil.boot_time()
    return {
        "hostname": socket.gethostname(),
        "platform": platform.platform(),
        "uptime_seconds": int(time.time() - boot),
        "cpu": {
            "count": psutil.cpu_count() or 0,
            "percent": psutil.cpu_percent(interval=0.2),
        },
        "memory": {
            "total": vm.total,
            "used": vm.used,
            "available": vm.available,
            "percent": vm.percent,
        },
        "disk": {
            "total": disk.total,
            "used": disk.used,
            "free": disk.free,
            "percent": disk.percent,
        },
        "load_average": [round(v, 2) for v in load],
        "collected_at": time.time(),
    }


async def host_stats() -> dict[str, Any]:
    return await asyncio.to_thread(collect_host_stats)
