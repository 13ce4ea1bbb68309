"""Attach-spec translators, one strategy per program type.

Each ProgramTranslator knows how a DeclaredSpec of its type:
- expands into attach targets on a node (one Instance per target)
- becomes a daemon LoadRequest for one target
- compares against what the daemon already holds (drift detection)

The engine looks translators up in TRANSLATORS and never branches on
program type itself.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable

from agent.errors import TargetError
from agent.models import (
    FUNCTION_ANNOTATION,
    INTERFACE_ANNOTATION,
    TARGET_ANNOTATION,
    TRACEPOINT_ANNOTATION,
    AttachTarget,
    DeclaredSpec,
    FentryParams,
    FexitParams,
    InterfaceSelector,
    KprobeParams,
    Node,
    ProgramType,
    TcParams,
    TracepointParams,
    UprobeParams,
    XdpParams,
)
from ebpf import interfaces
from ebpf.models import (
    PROGRAM_NAME_METADATA_KEY,
    UUID_METADATA_KEY,
    AttachInfo,
    BytecodeLocation,
    FentryAttachInfo,
    FexitAttachInfo,
    KprobeAttachInfo,
    LoadedProgram,
    LoadRequest,
    TcAttachInfo,
    TracepointAttachInfo,
    UprobeAttachInfo,
    XdpAttachInfo,
)

logger = logging.getLogger(__name__)

# Proceed-on actions, as the daemon's dispatcher numbers them.
XDP_PROCEED_ON: dict[str, int] = {
    "aborted": 0,
    "drop": 1,
    "pass": 2,
    "tx": 3,
    "redirect": 4,
    "dispatcher_return": 31,
}

TC_PROCEED_ON: dict[str, int] = {
    "unspec": -1,
    "ok": 0,
    "reclassify": 1,
    "shot": 2,
    "pipe": 3,
    "stolen": 4,
    "queued": 5,
    "repeat": 6,
    "redirect": 7,
    "trap": 8,
    "dispatcher_return": 31,
}

_UNSAFE_NAME_CHARS = re.compile(r"[/_:.]")


def proceed_on_values(symbols: list[str], table: dict[str, int]) -> list[int]:
    """Map proceed-on symbols to integers, dropping unknown ones."""
    return [table[symbol] for symbol in symbols if symbol in table]


def sanitize(value: str) -> str:
    """Make a target identity usable inside an object name."""
    return _UNSAFE_NAME_CHARS.sub("-", value).lower().strip("-")


def selected_interfaces(selector: InterfaceSelector, node: Node) -> list[str]:
    """Interfaces a tc/xdp spec attaches to on this node.

    Raises:
        TargetError: If the selector names no interface.
    """
    if selector.interfaces:
        return list(selector.interfaces)
    if selector.primary_node_interface:
        return [interfaces.primary_node_interface(node)]
    raise TargetError("no interfaces selected")


# ---------------------------------------------------------------------------
# Per-type target expansion and attach info
# ---------------------------------------------------------------------------


def _kprobe_targets(spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
    params: KprobeParams = spec.params
    if not params.function_names:
        raise TargetError("kprobe program has no function names")
    annotation = FUNCTION_ANNOTATION.format(type="kprobe")
    return [AttachTarget(key=fn, annotations={annotation: fn}) for fn in params.function_names]


def _kprobe_attach(spec: DeclaredSpec, target: AttachTarget) -> KprobeAttachInfo:
    params: KprobeParams = spec.params
    return KprobeAttachInfo(
        fn_name=target.key,
        offset=params.offset,
        retprobe=params.retprobe,
        container_pid=params.container_pid,
    )


def _uprobe_targets(spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
    params: UprobeParams = spec.params
    if not params.targets:
        raise TargetError("uprobe program has no targets")
    return [AttachTarget(key=path, annotations={TARGET_ANNOTATION: path}) for path in params.targets]


def _uprobe_attach(spec: DeclaredSpec, target: AttachTarget) -> UprobeAttachInfo:
    params: UprobeParams = spec.params
    return UprobeAttachInfo(
        fn_name=params.function_name,
        offset=params.offset,
        target=target.key,
        retprobe=params.retprobe,
        pid=params.pid,
        container_pid=params.container_pid,
    )


def _tracepoint_targets(spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
    params: TracepointParams = spec.params
    if not params.names:
        raise TargetError("tracepoint program has no tracepoint names")
    return [AttachTarget(key=name, annotations={TRACEPOINT_ANNOTATION: name}) for name in params.names]


def _tracepoint_attach(spec: DeclaredSpec, target: AttachTarget) -> TracepointAttachInfo:
    return TracepointAttachInfo(tracepoint=target.key)


def _interface_targets(program_type: ProgramType) -> Callable[[DeclaredSpec, Node], list[AttachTarget]]:
    annotation = INTERFACE_ANNOTATION.format(type=program_type.value)

    def expand(spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
        params: TcParams | XdpParams = spec.params
        return [
            AttachTarget(key=iface, annotations={annotation: iface})
            for iface in selected_interfaces(params.interface_selector, node)
        ]

    return expand


def _tc_attach(spec: DeclaredSpec, target: AttachTarget) -> TcAttachInfo:
    params: TcParams = spec.params
    return TcAttachInfo(
        iface=target.key,
        priority=params.priority,
        direction=params.direction,
        proceed_on=proceed_on_values(params.proceed_on, TC_PROCEED_ON),
    )


def _xdp_attach(spec: DeclaredSpec, target: AttachTarget) -> XdpAttachInfo:
    params: XdpParams = spec.params
    return XdpAttachInfo(
        iface=target.key,
        priority=params.priority,
        proceed_on=proceed_on_values(params.proceed_on, XDP_PROCEED_ON),
    )


def _function_target(program_type: ProgramType) -> Callable[[DeclaredSpec, Node], list[AttachTarget]]:
    annotation = FUNCTION_ANNOTATION.format(type=program_type.value)

    def expand(spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
        params: FentryParams | FexitParams = spec.params
        if not params.function_name:
            raise TargetError(f"{program_type.value} program has no function name")
        return [AttachTarget(key=params.function_name, annotations={annotation: params.function_name})]

    return expand


def _fentry_attach(spec: DeclaredSpec, target: AttachTarget) -> FentryAttachInfo:
    return FentryAttachInfo(fn_name=spec.params.function_name)


def _fexit_attach(spec: DeclaredSpec, target: AttachTarget) -> FexitAttachInfo:
    return FexitAttachInfo(fn_name=spec.params.function_name)


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgramTranslator:
    """The type-specific capabilities the convergence engine needs.

    Args:
        program_type: Program type this translator handles.
        expand_targets: Lists attach targets of a spec on a node.
        attach_info: Builds the daemon attach info for one target.
    """

    program_type: ProgramType
    expand_targets: Callable[[DeclaredSpec, Node], list[AttachTarget]]
    attach_info: Callable[[DeclaredSpec, AttachTarget], AttachInfo]

    def expand(self, spec: DeclaredSpec, node: Node) -> list[AttachTarget]:
        """Attach targets of ``spec`` on ``node``, deduplicated in order.

        Raises:
            TargetError: If the spec expands to no usable target, or two
                distinct targets would map to the same Instance name.
        """
        seen: set[str] = set()
        names: dict[str, str] = {}
        targets: list[AttachTarget] = []
        for target in self.expand_targets(spec, node):
            if target.key in seen:
                continue
            seen.add(target.key)
            name = sanitize(target.key)
            if name in names:
                raise TargetError(
                    f"targets {names[name]!r} and {target.key!r} would share the name suffix {name!r}"
                )
            names[name] = target.key
            targets.append(target)
        return targets

    def instance_name(self, spec: DeclaredSpec, node_name: str, target: AttachTarget) -> str:
        if not target.key:
            return f"{spec.name}-{node_name}"
        return f"{spec.name}-{node_name}-{sanitize(target.key)}"

    def build_load_request(
        self,
        spec: DeclaredSpec,
        target: AttachTarget,
        bytecode: BytecodeLocation,
        instance_id: str,
        map_owner_id: int | None = None,
    ) -> LoadRequest:
        """Daemon load request for one attach target of a spec.

        Args:
            spec: The declared spec being converged.
            target: Which of the spec's attach targets to load.
            bytecode: Resolved bytecode location.
            instance_id: Program id to load under (the Instance uid).
            map_owner_id: Kernel id of the program whose maps to share.
        """
        return LoadRequest(
            bytecode=bytecode,
            name=spec.bpf_function_name,
            program_type=self.program_type.kernel_type,
            attach=self.attach_info(spec, target),
            metadata={
                UUID_METADATA_KEY: instance_id,
                PROGRAM_NAME_METADATA_KEY: spec.name,
            },
            global_data=dict(spec.global_data),
            map_owner_id=map_owner_id,
        )

    def same_state(self, existing: LoadedProgram, desired: LoadRequest) -> tuple[bool, list[str]]:
        """Compare a loaded program with the load request it should match.

        The kernel id is never compared: it changes on every reload and is
        not part of desired state.

        Returns:
            Tuple of (same, reasons). Reasons name each differing aspect.
        """
        reasons: list[str] = []
        if not desired.bytecode.same_source(existing.bytecode):
            reasons.append("bytecode location differs")
        if existing.name != desired.name:
            reasons.append(f"function name differs ({existing.name!r} != {desired.name!r})")
        if existing.attach != desired.attach:
            reasons.append("attach info differs")
        if existing.map_owner_id != desired.map_owner_id:
            reasons.append(f"map owner differs ({existing.map_owner_id} != {desired.map_owner_id})")
        return not reasons, reasons


TRANSLATORS: dict[ProgramType, ProgramTranslator] = {
    ProgramType.KPROBE: ProgramTranslator(ProgramType.KPROBE, _kprobe_targets, _kprobe_attach),
    ProgramType.UPROBE: ProgramTranslator(ProgramType.UPROBE, _uprobe_targets, _uprobe_attach),
    ProgramType.TRACEPOINT: ProgramTranslator(ProgramType.TRACEPOINT, _tracepoint_targets, _tracepoint_attach),
    ProgramType.TC: ProgramTranslator(ProgramType.TC, _interface_targets(ProgramType.TC), _tc_attach),
    ProgramType.XDP: ProgramTranslator(ProgramType.XDP, _interface_targets(ProgramType.XDP), _xdp_attach),
    ProgramType.FENTRY: ProgramTranslator(ProgramType.FENTRY, _function_target(ProgramType.FENTRY), _fentry_attach),
    ProgramType.FEXIT: ProgramTranslator(ProgramType.FEXIT, _function_target(ProgramType.FEXIT), _fexit_attach),
}
