"""Pydantic models for the node agent's cluster objects.

Defines the data contracts between the cluster object store and the
convergence engine:
- DeclaredSpec: one *Program object (kprobe, tc, xdp, ...) expressing intent
- Instance: the per-node BpfProgram object materialised from a DeclaredSpec
- Condition: the single status tag on an Instance
- MapOwnerResolution: outcome of resolving a map-owner selector
- Node: the subset of the node object the agent reads

All cluster-facing models use camelCase aliases so they validate straight
from, and dump straight to, the JSON bodies the Kubernetes API speaks.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

API_GROUP = "bpfman.io"
API_VERSION = "v1alpha1"

# Labels stamped on every Instance so it can be listed by owner and node.
OWNER_LABEL = "bpfman.io/ownedByProgram"
HOST_LABEL = "kubernetes.io/hostname"

INSTANCE_KIND = "BpfProgram"
INSTANCE_PLURAL = "bpfprograms"

# Annotations carrying attach-target identity on an Instance.
FUNCTION_ANNOTATION = "bpfman.io.{type}programcontroller/function"
INTERFACE_ANNOTATION = "bpfman.io.{type}programcontroller/interface"
TRACEPOINT_ANNOTATION = "bpfman.io.tracepointprogramcontroller/tracepoint"
TARGET_ANNOTATION = "bpfman.io.uprobeprogramcontroller/target"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_global_data(value: Any) -> Any:
    """Accept global data either as raw bytes or as base64 text (wire form)."""
    if not isinstance(value, dict):
        return value
    decoded: dict[str, bytes] = {}
    for key, item in value.items():
        if isinstance(item, str):
            decoded[key] = base64.b64decode(item)
        else:
            decoded[key] = item
    return decoded


def encode_global_data(value: dict[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(item).decode("ascii") for key, item in value.items()}


class CamelModel(BaseModel):
    """Base for models that mirror Kubernetes JSON (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProgramType(str, Enum):
    """eBPF program types the agent knows how to reconcile."""

    KPROBE = "kprobe"
    UPROBE = "uprobe"
    TRACEPOINT = "tracepoint"
    TC = "tc"
    XDP = "xdp"
    FENTRY = "fentry"
    FEXIT = "fexit"

    @property
    def kind(self) -> str:
        """Kind of the declared-spec custom resource (e.g. KprobeProgram)."""
        return PROGRAM_KINDS[self]

    @property
    def plural(self) -> str:
        return f"{self.kind.lower()}s"

    @property
    def finalizer(self) -> str:
        """Finalizer this program type's controller puts on its Instances."""
        return f"bpfman.io.{self.value}programcontroller/finalizer"

    @property
    def kernel_type(self) -> int:
        """The kernel's bpf_prog_type value, as understood by the daemon."""
        return KERNEL_PROGRAM_TYPES[self]


PROGRAM_KINDS: dict[ProgramType, str] = {
    ProgramType.KPROBE: "KprobeProgram",
    ProgramType.UPROBE: "UprobeProgram",
    ProgramType.TRACEPOINT: "TracepointProgram",
    ProgramType.TC: "TcProgram",
    ProgramType.XDP: "XdpProgram",
    ProgramType.FENTRY: "FentryProgram",
    ProgramType.FEXIT: "FexitProgram",
}

# BPF_PROG_TYPE_KPROBE=2, SCHED_CLS=3, TRACEPOINT=5, XDP=6, TRACING=26
KERNEL_PROGRAM_TYPES: dict[ProgramType, int] = {
    ProgramType.KPROBE: 2,
    ProgramType.UPROBE: 2,
    ProgramType.TRACEPOINT: 5,
    ProgramType.TC: 3,
    ProgramType.XDP: 6,
    ProgramType.FENTRY: 26,
    ProgramType.FEXIT: 26,
}


# ---------------------------------------------------------------------------
# Selectors and bytecode references
# ---------------------------------------------------------------------------


class LabelSelectorRequirement(CamelModel):
    """One matchExpressions entry.

    The operator is kept as free text so that a typo in a cluster object
    surfaces as a status condition instead of failing to parse the spec.
    """

    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(CamelModel):
    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


class PullPolicy(str, Enum):
    ALWAYS = "Always"
    IF_NOT_PRESENT = "IfNotPresent"
    NEVER = "Never"


class SecretReference(CamelModel):
    name: str
    namespace: str = "default"


class BytecodeImage(CamelModel):
    url: str
    image_pull_policy: PullPolicy = PullPolicy.IF_NOT_PRESENT
    image_pull_secret: SecretReference | None = None


class BytecodeSelector(CamelModel):
    """Where the bytecode comes from: an OCI image or a path on the node.

    Exactly one should be set. That is checked at resolution time, where a
    violation becomes a BytecodeSelectorError condition.
    """

    image: BytecodeImage | None = None
    path: str | None = None


class InterfaceSelector(CamelModel):
    interfaces: list[str] | None = None
    primary_node_interface: bool | None = None


# ---------------------------------------------------------------------------
# Type-specific attach parameters
# ---------------------------------------------------------------------------


class KprobeParams(CamelModel):
    type: Literal["kprobe"] = "kprobe"
    function_names: list[str] = Field(default_factory=list)
    offset: int = 0
    retprobe: bool = False
    container_pid: int | None = None


class UprobeParams(CamelModel):
    type: Literal["uprobe"] = "uprobe"
    function_name: str | None = None
    offset: int = 0
    targets: list[str] = Field(default_factory=list)
    retprobe: bool = False
    pid: int | None = None
    container_pid: int | None = None


class TracepointParams(CamelModel):
    type: Literal["tracepoint"] = "tracepoint"
    names: list[str] = Field(default_factory=list)


class TcParams(CamelModel):
    type: Literal["tc"] = "tc"
    interface_selector: InterfaceSelector = Field(default_factory=InterfaceSelector)
    priority: int = 1000
    direction: str = "ingress"
    proceed_on: list[str] = Field(default_factory=list)


class XdpParams(CamelModel):
    type: Literal["xdp"] = "xdp"
    interface_selector: InterfaceSelector = Field(default_factory=InterfaceSelector)
    priority: int = 1000
    proceed_on: list[str] = Field(default_factory=list)


class FentryParams(CamelModel):
    type: Literal["fentry"] = "fentry"
    function_name: str = ""


class FexitParams(CamelModel):
    type: Literal["fexit"] = "fexit"
    function_name: str = ""


AttachParams = Annotated[
    Union[
        KprobeParams,
        UprobeParams,
        TracepointParams,
        TcParams,
        XdpParams,
        FentryParams,
        FexitParams,
    ],
    Field(discriminator="type"),
]


class DeclaredSpec(CamelModel):
    """A cluster-scoped *Program object: desired attachment intent.

    Independent of any node. The agent never writes to it; it only reads
    it and materialises per-node Instances from it.
    """

    name: str
    uid: str = ""
    resource_version: str | None = None
    node_selector: LabelSelector = Field(default_factory=LabelSelector)
    bytecode: BytecodeSelector = Field(default_factory=BytecodeSelector)
    bpf_function_name: str = ""
    global_data: dict[str, bytes] = Field(default_factory=dict)
    map_owner_selector: LabelSelector | None = None
    deletion_timestamp: datetime | None = None
    finalizers: list[str] = Field(default_factory=list)
    params: AttachParams

    @field_validator("global_data", mode="before")
    @classmethod
    def _decode_global_data(cls, value: Any) -> Any:
        return decode_global_data(value)

    @field_serializer("global_data", when_used="json")
    def _serialize_global_data(self, value: dict[str, bytes]) -> dict[str, str]:
        return encode_global_data(value)

    @property
    def program_type(self) -> ProgramType:
        return ProgramType(self.params.type)

    @property
    def is_being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_object(cls, obj: dict[str, Any], program_type: ProgramType) -> DeclaredSpec:
        """Build a DeclaredSpec from a raw custom object body.

        Args:
            obj: The JSON body returned by the custom objects API.
            program_type: Which *Program kind the body was listed as.

        Raises:
            pydantic.ValidationError: If the body does not match the schema.
        """
        metadata = obj.get("metadata", {})
        spec = dict(obj.get("spec") or {})
        return cls.model_validate({
            "name": metadata["name"],
            "uid": metadata.get("uid", ""),
            "resourceVersion": metadata.get("resourceVersion"),
            "deletionTimestamp": metadata.get("deletionTimestamp"),
            "finalizers": metadata.get("finalizers") or [],
            "nodeSelector": spec.get("nodeSelector") or {},
            "bytecode": spec.get("bytecode") or {},
            "bpfFunctionName": spec.get("bpfFunctionName", ""),
            "globalData": spec.get("globalData") or {},
            "mapOwnerSelector": spec.get("mapOwnerSelector"),
            "params": {**spec, "type": program_type.value},
        })


# ---------------------------------------------------------------------------
# Per-node Instance and its status
# ---------------------------------------------------------------------------


class ConditionType(str, Enum):
    """The enumerated status conditions an Instance can carry."""

    LOADED = "Loaded"
    NOT_LOADED = "NotLoaded"
    NOT_UNLOADED = "NotUnloaded"
    UNLOADED = "Unloaded"
    NOT_SELECTED = "NotSelected"
    MAP_OWNER_NOT_FOUND = "MapOwnerNotFound"
    MAP_OWNER_NOT_LOADED = "MapOwnerNotLoaded"
    BYTECODE_SELECTOR_ERROR = "BytecodeSelectorError"
    CONFIG_ERROR = "ConfigError"


class Condition(CamelModel):
    """A single status condition, shaped like a Kubernetes metav1.Condition."""

    type: ConditionType
    status: str = "True"
    reason: str
    message: str
    last_transition_time: datetime = Field(default_factory=_utcnow)

    def same_as(self, other: Condition | None) -> bool:
        """Whether writing ``self`` over ``other`` would change anything visible."""
        return (
            other is not None
            and other.type == self.type
            and other.message == self.message
        )


class OwnerReference(CamelModel):
    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True


class AttachTarget(BaseModel):
    """One attach point a DeclaredSpec expands to on this node.

    ``key`` is the target identity (function name, interface, tracepoint,
    binary path); empty for program types that attach exactly once.
    """

    key: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)


class Instance(CamelModel):
    """Per-node materialisation of one attach target of a DeclaredSpec.

    The ``uid`` assigned by the object store doubles as the program id the
    loader daemon tracks the program under.
    """

    name: str
    uid: str = ""
    resource_version: str | None = None
    program_type: ProgramType
    node: str
    owner: OwnerReference
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    kernel_id: int | None = None
    condition: Condition | None = None
    deletion_timestamp: datetime | None = None

    @property
    def condition_type(self) -> ConditionType | None:
        return self.condition.type if self.condition is not None else None

    def to_object(self) -> dict[str, Any]:
        """Render as a BpfProgram custom object body."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "finalizers": list(self.finalizers),
            "ownerReferences": [self.owner.to_wire()],
        }
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version

        spec: dict[str, Any] = {"type": self.program_type.value}
        if self.kernel_id is not None:
            spec["kernelId"] = self.kernel_id

        conditions = [self.condition.to_wire()] if self.condition is not None else []
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": INSTANCE_KIND,
            "metadata": metadata,
            "spec": spec,
            "status": {"conditions": conditions},
        }

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Instance:
        """Parse a BpfProgram custom object body.

        A status with more than one condition breaks the single-condition
        invariant; it is logged and treated as "no condition" so the next
        write replaces the whole list.
        """
        metadata = obj.get("metadata", {})
        spec = obj.get("spec") or {}
        labels = metadata.get("labels") or {}
        owners = metadata.get("ownerReferences") or []

        conditions = (obj.get("status") or {}).get("conditions") or []
        condition: Condition | None = None
        if len(conditions) > 1:
            logger.warning(
                "BpfProgram %s has %d conditions, expected one; resetting",
                metadata.get("name"), len(conditions),
            )
        elif conditions:
            try:
                condition = Condition.model_validate(conditions[0])
            except ValidationError as exc:
                logger.warning(
                    "BpfProgram %s has an unreadable condition, resetting: %s",
                    metadata.get("name"), exc,
                )

        return cls.model_validate({
            "name": metadata["name"],
            "uid": metadata.get("uid", ""),
            "resourceVersion": metadata.get("resourceVersion"),
            "programType": spec.get("type"),
            "node": labels.get(HOST_LABEL, ""),
            "owner": owners[0] if owners else {"kind": "", "name": labels.get(OWNER_LABEL, ""), "uid": ""},
            "labels": labels,
            "annotations": metadata.get("annotations") or {},
            "finalizers": metadata.get("finalizers") or [],
            "kernelId": spec.get("kernelId"),
            "condition": condition,
            "deletionTimestamp": metadata.get("deletionTimestamp"),
        })


class MapOwnerResolution(BaseModel):
    """Result of resolving a map-owner selector on this node."""

    model_config = ConfigDict(frozen=True)

    is_set: bool = False
    is_found: bool = False
    is_loaded: bool = False
    owner_kernel_id: int | None = None

    @property
    def is_blocking(self) -> bool:
        """True when a map owner is required but not usable yet."""
        return self.is_set and (not self.is_found or not self.is_loaded)


class Node(BaseModel):
    """The parts of the node object the agent relies on."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    internal_ips: list[str] = Field(default_factory=list)


class ReconcileResult(str, Enum):
    """Outcome of one convergence invocation."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    REQUEUE = "requeue"
