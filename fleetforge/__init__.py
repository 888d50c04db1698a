"""FleetForge: publish versioned edge components and deploy them to device fleets.

A CI build goes through one state machine: resolve a deterministic
component version from the package content, publish it to the fleet
control plane exactly once, roll it out to a device group in waves, and
report per-device outcomes.  Backends: a durable SQLite control plane for
development and single-host fleets, and AWS S3 + IoT Greengrass V2.
"""

__version__ = "0.1.0"
