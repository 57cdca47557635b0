#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Container resource usage from a single stats snapshot
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict

from instance_manager.executors.docker.client import DockerClient

BYTES_PER_MB = 1024 * 1024


@dataclass
class ContainerStats:
    cpu_percent: float
    memory_usage_mb: float
    memory_limit_mb: float
    memory_percent: float
    network_rx_mb: float
    network_tx_mb: float
    pids: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_mb(value: float) -> float:
    return round(value / BYTES_PER_MB, 2)


def compute_stats(raw: Dict[str, Any]) -> ContainerStats:
    """Convert raw cgroup counters into percentages and megabytes"""
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}
    cpu_usage = cpu_stats.get("cpu_usage") or {}
    precpu_usage = precpu_stats.get("cpu_usage") or {}

    cpu_delta = (cpu_usage.get("total_usage") or 0) - (precpu_usage.get("total_usage") or 0)
    system_delta = (cpu_stats.get("system_cpu_usage") or 0) - (
        precpu_stats.get("system_cpu_usage") or 0
    )
    online_cpus = (
        cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1
    )

    cpu_percent = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu_percent = cpu_delta / system_delta * online_cpus * 100.0

    memory_stats = raw.get("memory_stats") or {}
    memory_usage = memory_stats.get("usage") or 0
    memory_limit = memory_stats.get("limit") or 0
    memory_percent = memory_usage / memory_limit * 100.0 if memory_limit else 0.0

    rx_bytes = 0
    tx_bytes = 0
    for interface in (raw.get("networks") or {}).values():
        rx_bytes += interface.get("rx_bytes") or 0
        tx_bytes += interface.get("tx_bytes") or 0

    return ContainerStats(
        cpu_percent=round(cpu_percent, 2),
        memory_usage_mb=_to_mb(memory_usage),
        memory_limit_mb=_to_mb(memory_limit),
        memory_percent=round(memory_percent, 2),
        network_rx_mb=_to_mb(rx_bytes),
        network_tx_mb=_to_mb(tx_bytes),
        pids=(raw.get("pids_stats") or {}).get("current") or 0,
    )


async def get_container_stats(docker: DockerClient, container_id: str) -> ContainerStats:
    raw = await docker.container_stats(container_id)
    return compute_stats(raw)
