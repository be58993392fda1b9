"""ServiceExport controller and its building blocks."""

from clusterlink.controller.aggregation import ServiceAggregationManager
from clusterlink.controller.conditions import ConditionTracker
from clusterlink.controller.endpoints import EndpointAggregator
from clusterlink.controller.reconciler import ServiceExportController
from clusterlink.controller.validator import ExportValidator, ValidationResult
from clusterlink.controller.workqueue import WorkQueue

__all__ = [
    "ConditionTracker",
    "EndpointAggregator",
    "ExportValidator",
    "ServiceAggregationManager",
    "ServiceExportController",
    "ValidationResult",
    "WorkQueue",
]
