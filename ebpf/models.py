"""Wire models for the loader daemon's Load / Unload / List / Get calls.

These mirror the daemon's request and response bodies. LoadRequest is what
the translators build; LoadedProgram is what List and Get return and is
never persisted by the agent.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field, field_serializer, field_validator

from agent.models import CamelModel, decode_global_data, encode_global_data

# Metadata keys the agent stamps on every program it loads.
UUID_METADATA_KEY = "bpfman.io/uuid"
PROGRAM_NAME_METADATA_KEY = "bpfman.io/ProgramName"


class ImageLocation(CamelModel):
    url: str
    image_pull_policy: int = 1
    username: str | None = None
    password: str | None = None


class BytecodeLocation(CamelModel):
    """Either an OCI image or a file path on the node."""

    image: ImageLocation | None = None
    file: str | None = None

    def same_source(self, other: BytecodeLocation | None) -> bool:
        """Compare locations, ignoring registry credentials.

        The daemon never echoes credentials back, so they cannot take part
        in drift detection.
        """
        if other is None:
            return False
        if self.image is not None or other.image is not None:
            if self.image is None or other.image is None:
                return False
            return (
                self.image.url == other.image.url
                and self.image.image_pull_policy == other.image.image_pull_policy
            )
        return self.file == other.file


class KprobeAttachInfo(CamelModel):
    kind: Literal["kprobe"] = "kprobe"
    fn_name: str
    offset: int = 0
    retprobe: bool = False
    container_pid: int | None = None


class UprobeAttachInfo(CamelModel):
    kind: Literal["uprobe"] = "uprobe"
    fn_name: str | None = None
    offset: int = 0
    target: str
    retprobe: bool = False
    pid: int | None = None
    container_pid: int | None = None


class TracepointAttachInfo(CamelModel):
    kind: Literal["tracepoint"] = "tracepoint"
    tracepoint: str


class TcAttachInfo(CamelModel):
    kind: Literal["tc"] = "tc"
    iface: str
    priority: int
    direction: str
    proceed_on: list[int] = Field(default_factory=list)


class XdpAttachInfo(CamelModel):
    kind: Literal["xdp"] = "xdp"
    iface: str
    priority: int
    proceed_on: list[int] = Field(default_factory=list)


class FentryAttachInfo(CamelModel):
    kind: Literal["fentry"] = "fentry"
    fn_name: str


class FexitAttachInfo(CamelModel):
    kind: Literal["fexit"] = "fexit"
    fn_name: str


AttachInfo = Annotated[
    Union[
        KprobeAttachInfo,
        UprobeAttachInfo,
        TracepointAttachInfo,
        TcAttachInfo,
        XdpAttachInfo,
        FentryAttachInfo,
        FexitAttachInfo,
    ],
    Field(discriminator="kind"),
]


class LoadRequest(CamelModel):
    """Body of a Load call: everything the daemon needs to load and attach."""

    bytecode: BytecodeLocation
    name: str
    program_type: int
    attach: AttachInfo
    metadata: dict[str, str] = Field(default_factory=dict)
    global_data: dict[str, bytes] = Field(default_factory=dict)
    map_owner_id: int | None = None

    @field_validator("global_data", mode="before")
    @classmethod
    def _decode_global_data(cls, value: Any) -> Any:
        return decode_global_data(value)

    @field_serializer("global_data", when_used="json")
    def _serialize_global_data(self, value: dict[str, bytes]) -> dict[str, str]:
        return encode_global_data(value)

    @property
    def program_id(self) -> str:
        return self.metadata.get(UUID_METADATA_KEY, "")


class LoadedProgram(CamelModel):
    """A program as the daemon currently reports it.

    ``id`` is the agent-assigned program id (the Instance uid); ``kernel_id``
    is the number the kernel handed out at load time and changes on every
    reload.
    """

    id: str = ""
    kernel_id: int
    name: str = ""
    program_type: int | None = None
    bytecode: BytecodeLocation | None = None
    attach: AttachInfo | None = None
    map_ids: list[int] = Field(default_factory=list)
    map_owner_id: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _missing_id(cls, value: Any) -> Any:
        return "" if value is None else value
