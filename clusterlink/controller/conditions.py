"""
Status condition tracking for ServiceExports.

Holds the Valid and Synced conditions of one export and computes transitions
with compare-and-swap semantics: re-asserting an unchanged condition is a
no-op, so status writes (and the watch events they cause) only happen on real
transitions.
"""

import time
from typing import Callable, Dict, List, Optional

from clusterlink.api.types import Condition, ConditionStatus
from clusterlink.constants import (
    REASON_EXPORT_FAILED,
    REASON_NO_SERVICE_IMPORT,
    REASON_SERVICE_UNAVAILABLE,
    SERVICE_EXPORT_SYNCED,
    SERVICE_EXPORT_VALID,
)

CONDITION_ORDER = (SERVICE_EXPORT_VALID, SERVICE_EXPORT_SYNCED)


class ConditionTracker:
    """
    Fixed map of condition type -> Condition for one ServiceExport.

    The transition timestamp only moves when the status value changes;
    reason or message updates under the same status keep it.
    """

    def __init__(
        self,
        conditions: Optional[List[Condition]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize tracker from the conditions currently persisted.

        Args:
            conditions: Persisted conditions
            clock: Time source for transition timestamps
        """
        self._clock = clock
        self._conditions: Dict[str, Condition] = {}
        self._changed = False

        for condition in conditions or []:
            self._conditions[condition.type] = Condition(
                type=condition.type,
                status=condition.status,
                reason=condition.reason,
                message=condition.message,
                last_transition_time=condition.last_transition_time,
            )

    @property
    def changed(self) -> bool:
        """Whether any condition changed since construction."""
        return self._changed

    def set(
        self,
        condition_type: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> bool:
        """
        Set a condition.

        Args:
            condition_type: Condition type
            status: New status
            reason: Machine-readable reason
            message: Human-readable message

        Returns:
            True if the condition changed
        """
        desired = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
        )

        current = self._conditions.get(condition_type)
        if desired.same_as(current):
            return False

        if current is not None and current.status == status:
            desired.last_transition_time = current.last_transition_time
        else:
            desired.last_transition_time = self._clock()

        self._conditions[condition_type] = desired
        self._changed = True

        return True

    def get(self, condition_type: str) -> Optional[Condition]:
        """Get a condition by type."""
        return self._conditions.get(condition_type)

    def is_true(self, condition_type: str) -> bool:
        condition = self._conditions.get(condition_type)
        return condition is not None and condition.status == ConditionStatus.TRUE

    def remove(self, condition_type: str) -> bool:
        """
        Remove a condition.

        Returns:
            True if the condition existed
        """
        if condition_type not in self._conditions:
            return False

        del self._conditions[condition_type]
        self._changed = True

        return True

    def conditions(self) -> List[Condition]:
        """
        Get conditions in canonical order (Valid, Synced, then any others).

        Returns:
            List of conditions
        """
        ordered = [self._conditions[t] for t in CONDITION_ORDER if t in self._conditions]
        ordered.extend(
            c for t, c in sorted(self._conditions.items()) if t not in CONDITION_ORDER
        )
        return ordered

    # Transitions

    def set_valid(self, valid: bool, reason: str = "", message: str = "") -> bool:
        """Record the outcome of export validation."""
        status = ConditionStatus.TRUE if valid else ConditionStatus.FALSE
        return self.set(SERVICE_EXPORT_VALID, status, reason, message)

    def set_synced(self) -> bool:
        """Record that the contribution is durably recorded on the broker."""
        return self.set(
            SERVICE_EXPORT_SYNCED,
            ConditionStatus.TRUE,
            message="The ServiceImport was successfully synced to the broker",
        )

    def set_service_unavailable(self) -> bool:
        """Record that the target Service does not exist."""
        return self.set(
            SERVICE_EXPORT_SYNCED,
            ConditionStatus.FALSE,
            REASON_SERVICE_UNAVAILABLE,
            "Service to be exported doesn't exist",
        )

    def set_unexported(self) -> bool:
        """Record that the contribution was withdrawn."""
        return self.set(
            SERVICE_EXPORT_SYNCED,
            ConditionStatus.FALSE,
            REASON_NO_SERVICE_IMPORT,
            "ServiceImport was deleted",
        )

    def set_export_failed(self, message: str) -> bool:
        """Record that propagation failed after exhausting retries."""
        return self.set(
            SERVICE_EXPORT_SYNCED,
            ConditionStatus.FALSE,
            REASON_EXPORT_FAILED,
            message,
        )
