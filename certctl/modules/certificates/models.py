"""Data models for a certificate renewal run."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import time


class RenewalPhase(str, Enum):
    """Phases of a renewal run, in execution order."""
    NOT_STARTED = 'not_started'
    VALIDATE_COMPONENT = 'validate_component'
    CHECK_API_REACHABILITY = 'check_api_reachability'
    BACKUP_CLUSTER_CONFIG = 'backup_cluster_config'
    RENEW_ETCD = 'renew_etcd'
    RENEW_CONTROL_PLANE = 'renew_control_plane'
    CLEANUP = 'cleanup'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class RenewalState:
    """Tracks the progress of a renewal run."""
    phase: RenewalPhase = RenewalPhase.NOT_STARTED
    nodes_renewed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    failed_phase: Optional[RenewalPhase] = None
    start_time: float = field(default_factory=time.time)
    metrics: Dict[str, Any] = field(default_factory=dict)

    def update_phase(self, phase: RenewalPhase) -> None:
        """Update the renewal phase."""
        self.phase = phase
        self.metrics[f'phase_{phase.value}_start'] = time.time()

    def record_node(self, component: str, node: str) -> None:
        self.nodes_renewed.append(f"{component}/{node}")

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def add_error(self, error: str) -> None:
        """Record an error and mark the run as failed."""
        self.errors.append(error)
        if self.phase != RenewalPhase.FAILED:
            self.failed_phase = self.phase
        self.phase = RenewalPhase.FAILED
