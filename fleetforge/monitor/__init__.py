"""Terminal rendering of runs, deployments and component versions."""
