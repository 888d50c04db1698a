"""Production configuration guard — enforces hard constraints in production.

Runs once when the orchestrator is built and fails hard (raises
``ProductionConfigError``) if any constraint is violated.  Other code should
not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from fleetforge.config import ProdConfig

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    It must not be caught and ignored; the process should exit.
    """


def enforce_production_constraints(config: ProdConfig) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. The backend must be ``aws``; the SQLite control plane is a
       development and test backend.
    3. An artifact bucket must be configured.

    Raises
    ------
    ProductionConfigError
        If any production constraint is violated.
    """
    if not config.is_production:
        return

    violations: list[str] = []

    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set FLEETFORGE_DEBUG=false."
        )

    if config.backend != "aws":
        violations.append(
            f"backend={config.backend!r} is not allowed in production. "
            "Set FLEETFORGE_BACKEND=aws."
        )

    if not config.artifact_bucket:
        violations.append(
            "No artifact bucket configured. Set FLEETFORGE_ARTIFACT_BUCKET."
        )

    if violations:
        msg = "Production configuration violations:\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.error(msg)
        raise ProductionConfigError(msg)

    logger.info("Production constraints verified.")
