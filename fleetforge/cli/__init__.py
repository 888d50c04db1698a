"""FleetForge CLI — Typer-based command-line interface.

Provides the ``fleetforge`` command: ``publish`` for CI pipelines, ``init``
for one-time environment stand-up, and inspection commands for
deployments, component versions, runs and (local backend) devices.

All output uses Rich for formatted terminal display.
"""
