"""
Export eligibility checks for Services.
"""

from dataclasses import dataclass

from clusterlink.api.types import Service, ServiceImportType, ServiceType
from clusterlink.constants import REASON_UNSUPPORTED_SERVICE_TYPE

SUPPORTED_SERVICE_TYPES = {
    ServiceType.CLUSTER_IP: ServiceImportType.CLUSTER_SET_IP,
    ServiceType.HEADLESS: ServiceImportType.HEADLESS,
}


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating a Service for export.

    Attributes:
        valid: Whether the service can be exported
        reason: Failure reason (empty when valid)
        message: Human-readable explanation (empty when valid)
    """
    valid: bool
    reason: str = ""
    message: str = ""


class ExportValidator:
    """
    Decides whether a Service may be exported.

    Only ClusterIP and Headless services are supported. A failed validation
    is permanent for the Service revision it was computed from.
    """

    def validate(self, service: Service) -> ValidationResult:
        """
        Validate a service.

        Args:
            service: Service to check

        Returns:
            Validation result
        """
        service_type = service.effective_type()

        if service_type not in SUPPORTED_SERVICE_TYPES:
            return ValidationResult(
                valid=False,
                reason=REASON_UNSUPPORTED_SERVICE_TYPE,
                message=f"Service of type {service_type.value} not supported",
            )

        return ValidationResult(valid=True)

    @staticmethod
    def import_type_for(service: Service) -> ServiceImportType:
        """
        Get the aggregation type a supported service maps to.

        Args:
            service: A service that passed validation

        Returns:
            ServiceImport type
        """
        return SUPPORTED_SERVICE_TYPES[service.effective_type()]
