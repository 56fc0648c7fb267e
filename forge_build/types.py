"""Shared type definitions for forge_build.

This module contains enums, well-known label/annotation keys and small
dataclasses shared across subpackages to avoid circular imports.
"""

from enum import Enum

# API group served by the Build controller.
API_GROUP = "forge.build"
API_VERSION = "v1alpha1"
BUILD_KIND = "Build"

BUILD_FINALIZER = "build.forge.build"

# Labels
BUILD_NAME_LABEL = "forge.build/build-name"
BUILD_NAMESPACE_LABEL = "forge.build/build-namespace"
PROVISIONER_ID_LABEL = "forge.build/provisioner-uuid"
MANAGED_BY_LABEL = "forge.build/managed-by"
PROVIDER_NAME_LABEL = "forge.build/provider"
WATCH_LABEL = "cluster.x-k8s.io/watch-filter"

# Label on a CustomResourceDefinition listing the versions compatible with
# this release, e.g. "v1alpha1_v1beta1".
CONTRACT_VERSION_LABEL = "forge.build/v1alpha1"

# Annotations
PAUSED_ANNOTATION = "forge.build/paused"
MANAGED_BY_ANNOTATION = "forge.build/managed-by"

BUILD_SECRET_TYPE = "forge.build/secret"

# Built-in shell provisioner
SHELL_PROVISIONER_NAME = "forge-provisioner-shell"
SHELL_PROVISIONER_CONTAINER = "shell-provisioner"
FORGE_CORE_NAMESPACE = "forge-core"


class BuildPhase(str, Enum):
    """Derived life-cycle phase of a Build."""

    PENDING = "Pending"
    BUILDING = "Building"
    TERMINATING = "Terminating"
    COMPLETED = "Completed"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ProvisionerType(str, Enum):
    """Kinds of provisioning steps a Build can carry."""

    BUILTIN_SHELL = "built-in/shell"
    EXTERNAL = "external"


class ProvisionerStatus(str, Enum):
    """Runtime status of a single provisioning step."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class BuildStatusError(str, Enum):
    """Terminal failure reasons written to Build.status.failureReason."""

    INVALID_CONFIGURATION = "InvalidConfiguration"
    UNSUPPORTED_CHANGE = "UnsupportedChange"
    CREATE_ERROR = "CreateError"
    UPDATE_ERROR = "UpdateError"
    DELETE_ERROR = "DeleteError"
    PROVISIONER_FAILED = "ProvisionerFailed"


class ConditionStatus(str, Enum):
    """Status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    """Severity of a condition that is not True."""

    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


class ConditionType(str, Enum):
    """Condition types maintained on a Build."""

    READY = "Ready"
    INFRASTRUCTURE_READY = "InfrastructureReady"
    PROVISIONERS_READY = "ProvisionersReady"
    BUILD_INITIALIZED = "BuildInitialized"


class ConditionReason(str, Enum):
    """Reasons used on Build conditions."""

    WAITING_FOR_INFRASTRUCTURE = "WaitingForInfrastructure"
    WAITING_FOR_CONNECTION = "WaitingForConnection"
    WAITING_FOR_PROVISIONERS = "WaitingForProvisioners"
    DELETED = "Deleted"
    DELETING = "Deleting"


class EventType(str, Enum):
    """Severity of a recorded event."""

    NORMAL = "Normal"
    WARNING = "Warning"


__all__ = [
    "API_GROUP",
    "API_VERSION",
    "BUILD_FINALIZER",
    "BUILD_KIND",
    "BUILD_NAME_LABEL",
    "BUILD_NAMESPACE_LABEL",
    "BUILD_SECRET_TYPE",
    "BuildPhase",
    "BuildStatusError",
    "CONTRACT_VERSION_LABEL",
    "ConditionReason",
    "ConditionSeverity",
    "ConditionStatus",
    "ConditionType",
    "EventType",
    "FORGE_CORE_NAMESPACE",
    "MANAGED_BY_ANNOTATION",
    "MANAGED_BY_LABEL",
    "PAUSED_ANNOTATION",
    "PROVIDER_NAME_LABEL",
    "PROVISIONER_ID_LABEL",
    "ProvisionerStatus",
    "ProvisionerType",
    "SHELL_PROVISIONER_CONTAINER",
    "SHELL_PROVISIONER_NAME",
    "WATCH_LABEL",
]
