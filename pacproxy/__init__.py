"""
Supervisor for a PAC-routed proxy client.

This package serves a hot-reloaded PAC file on a loopback endpoint, points the
operating system's proxy settings at it, and supervises the proxy client
process, restoring the system proxy settings on shutdown.
"""

from __future__ import annotations

__all__ = [
    "api",
    "config",
    "discovery",
    "launcher",
    "main",
    "orchestrator",
    "pac",
    "server",
    "state",
    "types",
    "watcher",
]
