"""
Escrow release sweep job.

Runs the release-if-eligible check over held transactions whose release date
has passed. Ownership is never transferred from here.
"""

import logging
from typing import Any, Dict

from services.escrow_release_policy import escrow_release_policy

logger = logging.getLogger(__name__)


async def run_escrow_release_sweep() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await escrow_release_policy.run_release_sweep()
    summary = result.get_summary()
    if result.failed:
        logger.warning(f"⚠️ ESCROW_SWEEP_FAILURES: {result.failed} transactions failed: {result.errors}")
    return summary
