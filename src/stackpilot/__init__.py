"""
stackpilot - lifecycle orchestrator for a single-host container stack.

This package installs, updates, rolls back, backs up and restores a
multi-service deployment driven by a container engine, with health-gated
tiered launches, checkpoints and a host-local mutation lock.
"""

__version__ = "0.1.0"
