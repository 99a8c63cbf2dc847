"""
Refresh cycle orchestration and background scheduling.
"""

from portsync.sync.orchestrator import IntegrationOrchestrator
from portsync.sync.scheduler import AutoRefreshScheduler

__all__ = ["IntegrationOrchestrator", "AutoRefreshScheduler"]
