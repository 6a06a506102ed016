"""Tuning options for the orchestrator and the lease sweeper."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OrchestratorOptions:
    lease_duration_seconds: float = 60.0
    sweep_interval_seconds: float = 15.0
    conflict_retries: int = 3
    retry_backoff_seconds: float = 0.05
