"""
VPS Control Plane
=================

Provisioning and lifecycle management for Proxmox-hosted VPS instances.

This package provides:
- Async Proxmox API client and task poller
- Typed job queues with idempotency keys and exponential-backoff retry
- Provisioning, power and snapshot pipelines
- Stripe webhook integration and the billing suspension lifecycle
"""

__version__ = "1.0.0"
