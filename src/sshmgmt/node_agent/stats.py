"""Host hardware and network counters reported by the node agent."""

from __future__ import annotations

import time

import psutil

_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(value: float) -> str:
    """Decimal-unit rendering, e.g. ``1.5 MB``."""
    size = float(value)
    for unit in _UNITS:
        if size < 1000 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.1f} {unit}"
        size /= 1000
    return f"{size:.1f} {_UNITS[-1]}"


def format_uptime(seconds: int) -> str:
    parts = []
    remaining = seconds
    for label, span in (("days", 86400), ("hours", 3600), ("minutes", 60)):
        amount, remaining = divmod(remaining, span)
        if amount:
            parts.append(f"{amount} {label}")
    return " ".join(parts)


def _usage_block(total: int, free: int) -> dict:
    used = total - free
    return {
        "used": used,
        "free": free,
        "total": total,
        "pretty": f"{format_bytes(used)}/{format_bytes(total)} ({format_bytes(free)})",
    }


def hw_stats(mount_point: str = "/") -> dict:
    memory = psutil.virtual_memory()
    swap = psutil.swap_memory()
    disk = psutil.disk_usage(mount_point)
    uptime = int(time.time() - psutil.boot_time())
    disk_info = _usage_block(disk.total, disk.free)
    disk_info["mount_point"] = mount_point
    disk_info["pretty"] = f"{mount_point}: {disk_info['pretty']}"
    return {
        "cpu_load": list(psutil.getloadavg()),
        "memory_usage": _usage_block(memory.total, memory.available),
        "swap_usage": _usage_block(swap.total, swap.free),
        "disk_info": disk_info,
        "uptime": {"seconds": uptime, "pretty": format_uptime(uptime)},
    }


def net_stats() -> list[dict]:
    counters = psutil.net_io_counters(pernic=True)
    return [
        {
            "interface": interface,
            "tx": format_bytes(stats.bytes_sent),
            "rx": format_bytes(stats.bytes_recv),
            "total": format_bytes(stats.bytes_sent + stats.bytes_recv),
        }
        for interface, stats in sorted(counters.items())
    ]
