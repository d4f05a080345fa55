"""
Orchestrator package for running multiple dnscrypt-proxy instances.

This package exposes typed helpers for resolver catalog loading, latency
probing, endpoint allocation, child process supervision and shutdown that
collectively implement the multi-instance orchestrator.
"""

from __future__ import annotations

__all__ = [
    "catalog",
    "config",
    "errors",
    "launcher",
    "logs",
    "main",
    "probe",
    "ranges",
    "shutdown",
    "status",
    "supervisor",
    "system",
    "types",
    "validation",
]
