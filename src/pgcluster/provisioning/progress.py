"""Live provisioning progress for a single cluster."""

from __future__ import annotations

import logging

from pgcluster.models import PROVISIONING_STEP_ORDER, TOTAL_PROVISIONING_STEPS, ProvisioningStep
from pgcluster.store.clusters import ClusterStore

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Persists ``(step, progress)`` after each phase.

    Each call is its own committed write, so a poller sees the step change
    while the provisioning task is still running.
    """

    def __init__(self, clusters: ClusterStore, cluster_id: str, slug: str) -> None:
        self._clusters = clusters
        self._cluster_id = cluster_id
        self._slug = slug

    def advance(self, step: ProvisioningStep) -> None:
        index = PROVISIONING_STEP_ORDER[step]
        logger.info("Cluster %s: %s (%d/%d)", self._slug, step.value, index, TOTAL_PROVISIONING_STEPS)
        if not self._clusters.update_progress(self._cluster_id, step, index):
            logger.debug("Progress for %s not recorded (terminal or already further)", self._slug)
