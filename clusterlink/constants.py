"""
Label keys, label values, condition types and condition reasons shared by
the controller, the propagator and the tests.
"""

# Labels carried by every EndpointSlice this agent produces or imports.
LABEL_MANAGED_BY = "endpointslice.kubernetes.io/managed-by"
LABEL_VALUE_MANAGED_BY = "clusterlink-agent"
LABEL_SOURCE_CLUSTER = "multicluster.kubernetes.io/source-cluster"
LABEL_SERVICE_NAME = "multicluster.kubernetes.io/service-name"
LABEL_SOURCE_NAMESPACE = "clusterlink.io/source-namespace"

# Condition types on a ServiceExport.
SERVICE_EXPORT_VALID = "Valid"
SERVICE_EXPORT_SYNCED = "Synced"

# Condition reasons.
REASON_UNSUPPORTED_SERVICE_TYPE = "UnsupportedServiceType"
REASON_SERVICE_UNAVAILABLE = "ServiceUnavailable"
REASON_NO_SERVICE_IMPORT = "NoServiceImport"
REASON_EXPORT_FAILED = "ExportFailed"
