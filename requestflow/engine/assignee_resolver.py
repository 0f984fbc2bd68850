"""Assignee Resolver - Turn a step's role token into a task owner"""
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..config.settings import settings
from ..domain.enums import HUMAN_KINDS
from ..domain.models import ActiveStep, Assignment, Delegation
from ..domain.errors import (
    AssigneeResolutionError, HierarchyCycleError, ManagerNotFoundError
)
from ..repositories.base import DirectoryStore
from ..utils.logger import get_logger
from ..utils.time import ensure_utc, utc_now

logger = get_logger(__name__)


DIRECT_MANAGER = "DIRECT_MANAGER"
_MANAGER_LEVEL_RE = re.compile(r"^MANAGER_LEVEL_(\d+)$")


def parse_hierarchy_token(role_token: str) -> Optional[int]:
    """
    Depth encoded by a hierarchy token

    Returns:
        1 for DIRECT_MANAGER, N for MANAGER_LEVEL_N, None for a literal role
    """
    if role_token == DIRECT_MANAGER:
        return 1
    match = _MANAGER_LEVEL_RE.match(role_token)
    if match:
        return int(match.group(1))
    return None


class AssigneeResolver:
    """
    Resolve role tokens against the organization directory

    Literal roles stay generic (any holder of the role may pick the task up).
    Hierarchy tokens walk the requester's manager chain a fixed number of
    levels and never fall back to another user when the chain is short.
    A resolved user is then swapped for their active delegate, one hop only.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        max_depth: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.directory = directory
        self.max_depth = max_depth if max_depth is not None else settings.max_manager_depth
        self.clock = clock

    def resolve_assignee(
        self,
        request_id: str,
        role_token: Optional[str],
        requester_id: str,
        at: Optional[datetime] = None
    ) -> Assignment:
        """
        Resolve one role token

        Args:
            request_id: Request the step belongs to (logging only)
            role_token: Literal role or DIRECT_MANAGER / MANAGER_LEVEL_N
            requester_id: User who raised the request
            at: Instant used for delegation checks, defaults to now

        Returns:
            Assignment with assignee_user xor assignee_role

        Raises:
            AssigneeResolutionError: If the token is blank or malformed
            ManagerNotFoundError: If the chain ends before the requested depth
            HierarchyCycleError: If the manager relation loops
        """
        token = (role_token or "").strip()
        if not token:
            raise AssigneeResolutionError(
                "Step has no role to resolve",
                details={"request_id": request_id}
            )

        depth = parse_hierarchy_token(token)
        if depth is None:
            logger.debug(
                f"Role {token} assigned generically",
                extra={"request_id": request_id, "role": token}
            )
            return Assignment(assignee_role=token)

        if depth < 1 or depth > self.max_depth:
            raise AssigneeResolutionError(
                f"Hierarchy depth {depth} outside 1..{self.max_depth} for {token}",
                details={"request_id": request_id, "role": token, "max_depth": self.max_depth}
            )

        candidate = self._walk_managers(request_id, requester_id, depth, token)
        return self._apply_delegation(request_id, candidate, at or self.clock())

    def resolve_many(
        self,
        request_id: str,
        steps: List[ActiveStep],
        requester_id: str,
        at: Optional[datetime] = None
    ) -> Dict[str, Assignment]:
        """
        Resolve every step that needs an owner

        Routing, subworkflow and end steps are skipped. A task, approval or
        action step without a role is an error, never an ownerless step.
        Any failure propagates so the caller commits nothing.
        """
        at = at or self.clock()
        assignments: Dict[str, Assignment] = {}
        for step in steps:
            if step.node_kind not in HUMAN_KINDS:
                continue
            if not (step.assigned_role or "").strip():
                raise AssigneeResolutionError(
                    f"Step {step.step_key} has no role, cannot assign an owner",
                    details={"request_id": request_id, "step_key": step.step_key}
                )
            assignments[step.step_key] = self.resolve_assignee(
                request_id, step.assigned_role, requester_id, at=at
            )
        return assignments

    # ========================================================================
    # Internals
    # ========================================================================

    def _walk_managers(self, request_id: str, requester_id: str, depth: int, token: str) -> str:
        visited = {requester_id}
        current = requester_id

        for level in range(1, depth + 1):
            manager = self.directory.get_manager(current)
            if not manager:
                logger.error(
                    f"Broken chain at level {level}: {current} has no manager, cannot resolve {token}",
                    extra={"request_id": request_id, "user_id": current, "role": token}
                )
                raise ManagerNotFoundError(
                    f"User {current} has no manager configured, cannot resolve {token}",
                    details={"request_id": request_id, "user_id": current, "level": level, "role": token}
                )
            if manager in visited:
                raise HierarchyCycleError(
                    f"Manager hierarchy loops at {manager} while resolving {token}",
                    details={"request_id": request_id, "user_id": manager, "level": level, "role": token}
                )
            visited.add(manager)
            current = manager

        logger.info(
            f"Resolved {token} to {current}",
            extra={"request_id": request_id, "role": token, "user_id": current}
        )
        return current

    def _apply_delegation(self, request_id: str, candidate: str, at: datetime) -> Assignment:
        delegations: List[Delegation] = [
            d for d in self.directory.list_active_delegations_from(candidate, at)
            if d.from_user == candidate and d.covers(at)
        ]
        if not delegations:
            return Assignment(assignee_user=candidate)

        # Most recently started grant wins
        chosen = max(delegations, key=lambda d: ensure_utc(d.start))
        logger.info(
            f"Delegation {chosen.delegation_id}: {candidate} -> {chosen.to_user}",
            extra={"request_id": request_id, "user_id": chosen.to_user}
        )
        return Assignment(assignee_user=chosen.to_user, delegated_from=candidate)
