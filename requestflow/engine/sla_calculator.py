"""SLA Calculator - Step deadlines and escalation times"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..repositories.base import SlaConfigStore
from .graph import WorkflowGraph
from ..utils.logger import get_logger
from ..utils.time import add_minutes, ensure_utc, is_overdue, utc_now

logger = get_logger(__name__)


WARNING_THRESHOLD_PERCENT = 80


@dataclass(frozen=True)
class SlaStatus:
    """Progress of a running step against its deadline"""
    total_minutes: float
    elapsed_minutes: float
    remaining_minutes: float
    percentage_used: float
    is_overdue: bool
    needs_warning: bool


class SlaCalculator:
    """
    Compute per-step deadlines from configured durations

    Durations come from the SLA config store first and the node's own
    sla_minutes second. The business-hours flag is not applied: deadlines
    are always wall-clock.
    """

    def __init__(self, sla_store: SlaConfigStore, clock: Callable[[], datetime] = utc_now):
        self.sla_store = sla_store
        self.clock = clock

    def duration_minutes(
        self,
        service_key: str,
        step_key: str,
        graph: Optional[WorkflowGraph] = None
    ) -> Optional[int]:
        """Configured duration, None when the step is not tracked"""
        minutes = self.sla_store.get_step_duration_minutes(service_key, step_key)
        node = graph.node(step_key) if graph is not None else None
        if minutes is None and node is not None:
            minutes = node.data.sla_minutes

        if node is not None and node.data.business_hours_only:
            logger.info(
                f"Step {step_key} declares business-hours SLA, using wall-clock time",
                extra={"service_key": service_key, "step_key": step_key}
            )

        if minutes is None or minutes <= 0:
            return None
        return minutes

    def calculate_deadline(
        self,
        service_key: str,
        step_key: str,
        graph: Optional[WorkflowGraph] = None
    ) -> Optional[datetime]:
        """
        Deadline for a step opened now

        Args:
            service_key: Service owning the workflow
            step_key: Step being opened
            graph: Compiled graph, enables the node-level fallback

        Returns:
            now + duration, or None if no SLA is tracked for the step
        """
        minutes = self.duration_minutes(service_key, step_key, graph)
        if minutes is None:
            return None

        deadline = add_minutes(ensure_utc(self.clock()), minutes)
        logger.debug(
            f"Step {step_key} due in {minutes} minutes",
            extra={"service_key": service_key, "step_key": step_key}
        )
        return deadline

    def calculate_escalation_at(
        self,
        deadline: Optional[datetime],
        step_key: str,
        graph: WorkflowGraph
    ) -> Optional[datetime]:
        """Deadline plus the node's escalation_minutes, when both exist"""
        node = graph.node(step_key)
        if deadline is None or node is None:
            return None
        minutes = node.data.escalation_minutes
        if minutes is None or minutes <= 0:
            return None
        return add_minutes(deadline, minutes)

    def is_overdue(self, deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
        return is_overdue(deadline, now or self.clock())

    def status(
        self,
        started_at: datetime,
        deadline: datetime,
        now: Optional[datetime] = None
    ) -> SlaStatus:
        """Elapsed/remaining breakdown with an 80% warning threshold"""
        now = ensure_utc(now or self.clock())
        started_at = ensure_utc(started_at)
        deadline = ensure_utc(deadline)

        total = (deadline - started_at).total_seconds() / 60
        elapsed = max(0.0, (now - started_at).total_seconds() / 60)
        used = (elapsed / total) * 100 if total > 0 else 100.0
        overdue = now > deadline

        return SlaStatus(
            total_minutes=total,
            elapsed_minutes=elapsed,
            remaining_minutes=max(0.0, total - elapsed),
            percentage_used=min(100.0, used),
            is_overdue=overdue,
            needs_warning=used >= WARNING_THRESHOLD_PERCENT and not overdue,
        )
