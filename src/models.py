"""
Resource models - Policies, placement bindings and placement rules.

All objects exchanged with the object store are pydantic models and are
validated whenever they cross the store boundary.
"""

import re
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

POLICY_GROUP = "policies.open-cluster-management.io"
POLICY_KIND = "Policy"
PLACEMENT_BINDING_KIND = "PlacementBinding"
PLACEMENT_RULE_GROUP = "apps.open-cluster-management.io"
PLACEMENT_RULE_KIND = "PlacementRule"

CLUSTER_NAME_LABEL = POLICY_GROUP + "/cluster-name"
CLUSTER_NAMESPACE_LABEL = POLICY_GROUP + "/cluster-namespace"
ROOT_POLICY_LABEL = POLICY_GROUP + "/root-policy"
OWNERSHIP_LABEL_KEYS = (CLUSTER_NAME_LABEL, CLUSTER_NAMESPACE_LABEL, ROOT_POLICY_LABEL)

# Namespaces are DNS labels (no dots), names are DNS subdomains.
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$")
LABEL_VALUE_PATTERN = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")


class ObjectMeta(BaseModel):
    """Identity and metadata shared by every stored object."""

    namespace: str
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Optional[Dict[str, str]] = None
    resource_version: str = ""

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if not NAMESPACE_PATTERN.match(v):
            raise ValueError(
                f"namespace '{v}' must consist of lowercase alphanumeric "
                "characters or '-', and be at most 63 characters"
            )
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not NAME_PATTERN.match(v):
            raise ValueError(
                f"name '{v}' must consist of lowercase alphanumeric "
                "characters, '-' or '.', and be at most 253 characters"
            )
        return v


class StoredObject(BaseModel):
    """Base class for kinds persisted in the object store."""

    kind: ClassVar[str] = ""
    api_group: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"


# ==================== Policy ====================


class PolicySpec(BaseModel):
    """
    Policy specification.

    Only ``disabled`` is interpreted by the propagator, everything else is
    carried to the replicas as an opaque payload.
    """

    model_config = ConfigDict(extra="allow")

    disabled: bool = False
    remediation_action: Optional[str] = None
    policy_templates: List[Dict[str, Any]] = Field(default_factory=list)


class Placement(BaseModel):
    placement_binding: str = ""
    placement_rule: str = ""


class CompliancePerClusterStatus(BaseModel):
    cluster_name: str = ""
    cluster_namespace: str = ""
    compliant: Optional[str] = None


class PolicyStatus(BaseModel):
    """Root-owned status. ``PolicyStatus()`` is the zero value."""

    compliant: Optional[str] = None
    placement: List[Placement] = Field(default_factory=list)
    status: List[CompliancePerClusterStatus] = Field(default_factory=list)


class Policy(StoredObject):
    """A root policy, or a replica of one when it carries the root-policy label."""

    kind: ClassVar[str] = POLICY_KIND
    api_group: ClassVar[str] = POLICY_GROUP

    spec: PolicySpec = Field(default_factory=PolicySpec)
    status: PolicyStatus = Field(default_factory=PolicyStatus)

    @property
    def disabled(self) -> bool:
        return self.spec.disabled

    @property
    def is_replica(self) -> bool:
        return ROOT_POLICY_LABEL in self.metadata.labels


# ==================== Placement ====================


class Subject(BaseModel):
    """An object bound to a placement rule by a placement binding."""

    api_group: str
    kind: str
    name: str

    def matches(self, policy: Policy) -> bool:
        return (
            self.api_group == Policy.api_group
            and self.kind == Policy.kind
            and self.name == policy.name
        )


class PlacementRef(BaseModel):
    api_group: str = PLACEMENT_RULE_GROUP
    kind: str = PLACEMENT_RULE_KIND
    name: str


class PlacementBinding(StoredObject):
    """Links the policies in ``subjects`` to one placement rule."""

    kind: ClassVar[str] = PLACEMENT_BINDING_KIND
    api_group: ClassVar[str] = POLICY_GROUP

    placement_ref: PlacementRef
    subjects: List[Subject] = Field(default_factory=list)


class PlacementDecision(BaseModel):
    """One selected target cluster."""

    cluster_name: str
    cluster_namespace: str

    @field_validator("cluster_namespace")
    @classmethod
    def validate_cluster_namespace(cls, v: str) -> str:
        if not NAMESPACE_PATTERN.match(v):
            raise ValueError(f"cluster namespace '{v}' is not a valid namespace")
        return v


class PlacementRuleStatus(BaseModel):
    decisions: List[PlacementDecision] = Field(default_factory=list)


class PlacementRule(StoredObject):
    """Computed target set. The propagator only reads ``status.decisions``."""

    kind: ClassVar[str] = PLACEMENT_RULE_KIND
    api_group: ClassVar[str] = PLACEMENT_RULE_GROUP

    spec: Dict[str, Any] = Field(default_factory=dict)
    status: PlacementRuleStatus = Field(default_factory=PlacementRuleStatus)


# ==================== Ownership labels ====================


def _check_label_value(v: str) -> str:
    if not LABEL_VALUE_PATTERN.match(v):
        raise ValueError(f"invalid label value '{v}'")
    return v


class OwnershipLabels(BaseModel):
    """
    Labels that tie a replicated policy to its root and target cluster.

    ``extra`` holds any other labels; it may not redefine the well-known keys.
    """

    cluster_name: str
    cluster_namespace: str
    root_policy: str
    extra: Dict[str, str] = Field(default_factory=dict)

    @field_validator("cluster_name", "cluster_namespace", "root_policy")
    @classmethod
    def validate_value(cls, v: str) -> str:
        if not v:
            raise ValueError("ownership label values cannot be empty")
        return _check_label_value(v)

    @field_validator("extra")
    @classmethod
    def validate_extra(cls, v: Dict[str, str]) -> Dict[str, str]:
        reserved = sorted(set(v) & set(OWNERSHIP_LABEL_KEYS))
        if reserved:
            raise ValueError(f"extra labels cannot set reserved keys: {reserved}")
        return v

    def to_labels(self) -> Dict[str, str]:
        labels = dict(self.extra)
        labels[CLUSTER_NAME_LABEL] = self.cluster_name
        labels[CLUSTER_NAMESPACE_LABEL] = self.cluster_namespace
        labels[ROOT_POLICY_LABEL] = self.root_policy
        return labels


def full_name_for_policy(policy: Policy) -> str:
    """
    Name used for every replica of ``policy``.

    Namespaces cannot contain dots, so splitting on the first dot recovers
    the root identity and no two roots share a replica name.
    """
    return f"{policy.namespace}.{policy.name}"


def split_full_name(full_name: str) -> tuple:
    """Inverse of :func:`full_name_for_policy`: returns ``(namespace, name)``."""
    namespace, sep, name = full_name.partition(".")
    if not sep or not namespace or not name:
        raise ValueError(f"'{full_name}' is not a full policy name")
    return namespace, name


def labels_for_root_policy(policy: Policy) -> Dict[str, str]:
    """Label selector matching every replica of ``policy``."""
    return root_policy_selector(policy.namespace, policy.name)


def root_policy_selector(namespace: str, name: str) -> Dict[str, str]:
    """Label selector for the replicas of the root ``namespace/name``."""
    return {ROOT_POLICY_LABEL: f"{namespace}.{name}"}
