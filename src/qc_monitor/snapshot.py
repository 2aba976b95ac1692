"""
System-status snapshot streamed on the manager live feed.

The snapshot is a read model rebuilt from the datastore on every cycle; it
never writes anything back.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Any

import psutil

from .models import (
    DAY,
    MachineStatus,
    NotificationStatus,
    PartStatus,
    QualityTestStatus,
    ensure_utc,
    format_ts,
    utcnow,
)
from .store import Datastore

logger = logging.getLogger(__name__)

PROCESS_STARTED = time.monotonic()
RECENT_SESSIONS = 10
RECENT_ACTIVITY = 5
RECENT_NOTIFICATIONS = 20
OVERDUE_LABEL = "Overdue"


def calculate_progress(start: datetime | None, deadline: datetime | None, now: datetime) -> int:
    """Elapsed share of the test window as a percentage in [0, 100]."""
    if start is None or deadline is None:
        return 0
    start, deadline = ensure_utc(start), ensure_utc(deadline)
    if now <= start:
        return 0
    if now >= deadline:
        return 100
    total = (deadline - start).total_seconds()
    elapsed = (now - start).total_seconds()
    return max(0, min(100, round(elapsed / total * 100)))


def format_time_remaining(deadline: datetime | None, now: datetime) -> str | None:
    if deadline is None:
        return None
    remaining = ensure_utc(deadline) - now
    if remaining <= timedelta(0):
        return OVERDUE_LABEL
    minutes_total = int(remaining.total_seconds() // 60)
    hours, minutes = divmod(minutes_total, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def time_ago(when: datetime | None, now: datetime) -> str:
    if when is None:
        return "unknown"
    minutes = int((now - ensure_utc(when)).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    return "just now"


def process_stats(connections: int) -> dict[str, Any]:
    memory = psutil.Process().memory_info()
    return {
        "connections_active": connections,
        "system_uptime": round(time.monotonic() - PROCESS_STARTED, 1),
        "memory_usage": {"rss": memory.rss, "vms": memory.vms},
    }


async def build_system_status(
    store: Datastore,
    connections: int = 0,
    default_duration_minutes: float = 30,
    online_window_seconds: float = 300,
    expiry_window_days: int = 7,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    try:
        active_tests, machines, sessions, notifications, users, parts = await asyncio.gather(
            store.list_tests(QualityTestStatus.IN_PROGRESS),
            store.list_machines(),
            store.recent_sessions(RECENT_SESSIONS),
            store.recent_notifications(RECENT_NOTIFICATIONS),
            store.list_users(),
            store.list_parts(),
        )

        machines_by_id = {m.id: m for m in machines}
        online_cutoff = now - timedelta(seconds=online_window_seconds)
        online_users = [
            u
            for u in users
            if u.last_login is not None and ensure_utc(u.last_login) > online_cutoff
        ]

        deadlines = {t.id: t.deadline(default_duration_minutes) for t in active_tests}
        overdue = [t for t in active_tests if deadlines[t.id] is not None and deadlines[t.id] < now]

        near_expiry = []
        for part in parts:
            if part.status == PartStatus.REPLACED:
                continue
            days = (ensure_utc(part.expiration_date) - now) / DAY
            if 0 < days <= expiry_window_days:
                near_expiry.append(part)

        unread = [
            n
            for n in notifications
            if n.status == NotificationStatus.ACTIVE and any(not r.read for r in n.recipients)
        ]
        busy_machines = {t.machine_id for t in active_tests if t.machine_id}

        def machine_name(machine_id):
            machine = machines_by_id.get(machine_id)
            return machine.name if machine else None

        return {
            "timestamp": format_ts(now),
            "summary": {
                "active_tests": len(active_tests),
                "overdue_tests": len(overdue),
                "total_machines": len(machines),
                "active_machines": sum(1 for m in machines if m.status == MachineStatus.ACTIVE),
                "online_users": len(online_users),
                "unread_notifications": len(unread),
                "parts_near_expiry": len(near_expiry),
            },
            "active_tests": [
                {
                    "id": t.id,
                    "machine_id": t.machine_id,
                    "machine_name": machine_name(t.machine_id),
                    "machine_location": getattr(machines_by_id.get(t.machine_id), "location", None),
                    "status": t.status,
                    "start_time": format_ts(t.start_time),
                    "deadline": format_ts(deadlines[t.id]),
                    "progress": calculate_progress(t.start_time, deadlines[t.id], now),
                    "is_overdue": deadlines[t.id] is not None and deadlines[t.id] < now,
                    "time_remaining": format_time_remaining(deadlines[t.id], now),
                }
                for t in active_tests
            ],
            "machines": [
                {
                    "id": m.id,
                    "name": m.name,
                    "status": m.status,
                    "location": m.location,
                    "last_maintenance": format_ts(m.last_maintenance),
                    "has_active_test": m.id in busy_machines,
                }
                for m in machines
            ],
            "recent_activity": [
                {
                    "id": s.id,
                    "machine_id": s.machine_id,
                    "machine_name": machine_name(s.machine_id),
                    "created_at": format_ts(s.created_at),
                    "status": s.status,
                    "time_ago": time_ago(s.created_at, now),
                }
                for s in sessions[:RECENT_ACTIVITY]
            ],
            "alerts": {
                "overdue_tests": [
                    {
                        "id": t.id,
                        "machine_name": machine_name(t.machine_id),
                        "overdue_since": time_ago(deadlines[t.id], now),
                    }
                    for t in overdue
                ],
                "parts_near_expiry": [
                    {
                        "id": p.id,
                        "machine_name": machine_name(p.machine_id),
                        "expiration_date": format_ts(p.expiration_date),
                        "days_remaining": math.ceil((ensure_utc(p.expiration_date) - now) / DAY),
                    }
                    for p in near_expiry
                ],
            },
            "performance": process_stats(connections),
        }
    except Exception as e:
        logger.exception("Failed to build system status")
        return {
            "timestamp": format_ts(now),
            "error": "Failed to load system data",
            "details": str(e),
        }
