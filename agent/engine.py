"""Convergence engine: drive one declared spec toward its desired state on this node.

One generic algorithm serves every program type; the type-specific parts
come from the translator strategy table. Each ``reconcile`` call:

1. reads everything fresh (node selection, existing Instances, attach
   targets, map owner, the daemon's loaded programs)
2. performs at most one object-store write
3. returns UNCHANGED, UPDATED or REQUEUE

The caller re-invokes after UPDATED (the write is itself a state change)
and after REQUEUE (with backoff). Nothing is carried between calls: all
per-invocation state lives in an immutable ReconcileContext.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, NamedTuple

from agent import conditions
from agent.errors import (
    BytecodeError,
    DaemonError,
    DeadlineExceeded,
    MapOwnerSelectorError,
    SelectorError,
    TargetError,
    TransientError,
)
from agent.models import (
    HOST_LABEL,
    OWNER_LABEL,
    AttachTarget,
    Condition,
    ConditionType,
    DeclaredSpec,
    Instance,
    MapOwnerResolution,
    Node,
    OwnerReference,
    ProgramType,
    ReconcileResult,
)
from agent.resolver import MapOwnerResolver
from agent.selector import matches
from agent.store import InstanceStore
from ebpf.bytecode import BytecodeResolver
from ebpf.loader import DaemonClient
from ebpf.models import BytecodeLocation, LoadedProgram, LoadRequest
from ebpf.programs import TRANSLATORS, ProgramTranslator

logger = logging.getLogger(__name__)

# Default time allowed for one invocation, seconds.
DEFAULT_RECONCILE_TIMEOUT = 30.0


class Deadline:
    """Wall-clock deadline shared by every call of one invocation.

    Args:
        seconds: Time allowed from now.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at: float = clock() + seconds

    def remaining(self) -> float:
        """Seconds left, for use as the next call's timeout.

        Raises:
            DeadlineExceeded: If the deadline has passed.
        """
        left = self._expires_at - self._clock()
        if left <= 0:
            raise DeadlineExceeded("reconcile deadline exceeded")
        return left


@dataclass(frozen=True)
class ReconcileContext:
    """Everything one invocation knows, read once up front."""

    spec: DeclaredSpec
    node: Node
    translator: ProgramTranslator
    deadline: Deadline
    is_selected: bool
    is_being_deleted: bool
    map_owner: MapOwnerResolution = field(default_factory=MapOwnerResolution)
    loaded: Mapping[str, LoadedProgram] = field(default_factory=dict)
    bytecode: BytecodeLocation | None = None
    bytecode_error: str | None = None
    config_error: str | None = None


class StepOutcome(NamedTuple):
    """What the daemon step decided for one Instance."""

    condition: Condition
    kernel_id: int | None


class ConvergenceEngine:
    """Reconcile declared specs into per-node Instances and daemon state.

    Args:
        store: Instance store.
        daemon: Loader daemon client.
        resolver: Map-owner resolver.
        bytecode: Bytecode source resolver.
        reconcile_timeout: Deadline for one invocation, in seconds.
        translators: Strategy table, keyed by program type.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: InstanceStore,
        daemon: DaemonClient,
        resolver: MapOwnerResolver,
        bytecode: BytecodeResolver,
        reconcile_timeout: float = DEFAULT_RECONCILE_TIMEOUT,
        translators: Mapping[ProgramType, ProgramTranslator] = TRANSLATORS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store: InstanceStore = store
        self.daemon: DaemonClient = daemon
        self.resolver: MapOwnerResolver = resolver
        self.bytecode: BytecodeResolver = bytecode
        self.reconcile_timeout: float = reconcile_timeout
        self.translators: Mapping[ProgramType, ProgramTranslator] = translators
        self._clock = clock

    def reconcile(self, spec: DeclaredSpec, node: Node) -> ReconcileResult:
        """Run one convergence invocation for ``spec`` on ``node``.

        Transient failures (daemon unreachable, deadline exceeded, store
        conflicts and API failures) are logged and reported as REQUEUE.
        """
        deadline = Deadline(self.reconcile_timeout, clock=self._clock)
        try:
            result = self._reconcile(spec, node, deadline)
        except (TransientError, DaemonError) as exc:
            logger.warning(
                "Reconciling %s %s on %s failed, requeueing: %s",
                spec.program_type.kind, spec.name, node.name, exc,
            )
            return ReconcileResult.REQUEUE
        logger.debug("Reconciled %s %s on %s: %s", spec.program_type.kind, spec.name, node.name, result.value)
        return result

    # -- context ---------------------------------------------------------

    def _build_context(self, spec: DeclaredSpec, node: Node, deadline: Deadline) -> ReconcileContext:
        translator = self.translators[spec.program_type]
        config_error: str | None = None

        try:
            is_selected = matches(spec.node_selector, node.labels)
        except SelectorError as exc:
            is_selected = False
            config_error = f"invalid node selector: {exc}"

        map_owner = MapOwnerResolution()
        bytecode: BytecodeLocation | None = None
        bytecode_error: str | None = None
        if is_selected and not spec.is_being_deleted:
            try:
                map_owner = self.resolver.resolve(spec.map_owner_selector, node.name, timeout=deadline.remaining())
            except MapOwnerSelectorError as exc:
                config_error = str(exc)
            try:
                bytecode = self.bytecode.resolve(spec.bytecode)
            except BytecodeError as exc:
                bytecode_error = str(exc)

        loaded = self.daemon.list(spec.program_type, timeout=deadline.remaining())

        return ReconcileContext(
            spec=spec,
            node=node,
            translator=translator,
            deadline=deadline,
            is_selected=is_selected,
            is_being_deleted=spec.is_being_deleted,
            map_owner=map_owner,
            loaded=loaded,
            bytecode=bytecode,
            bytecode_error=bytecode_error,
            config_error=config_error,
        )

    # -- invocation ------------------------------------------------------

    def _reconcile(self, spec: DeclaredSpec, node: Node, deadline: Deadline) -> ReconcileResult:
        existing = self.store.list_owned(spec.name, node.name, timeout=deadline.remaining())
        ctx = self._build_context(spec, node, deadline)

        target_error: TargetError | None = None
        try:
            targets = ctx.translator.expand(spec, node)
        except TargetError as exc:
            targets = []
            target_error = exc

        if ctx.is_being_deleted:
            # Teardown never depends on the targets still being valid.
            logger.debug(
                "%s %s is being deleted, tearing down %d instance(s) for %d target(s)",
                spec.program_type.kind, spec.name, len(existing), len(targets),
            )
            return self._teardown_all(ctx, existing)

        if target_error is not None:
            if not ctx.is_selected:
                # Nothing can attach here anyway; tear down what exists.
                return self._converge_existing(ctx, existing)
            logger.error("%s %s cannot be attached on %s: %s", spec.program_type.kind, spec.name, node.name, target_error)
            return self._report_config_error(ctx, existing, str(target_error))

        needs_retry = False
        expected: set[str] = set()
        for target in targets:
            name = ctx.translator.instance_name(spec, node.name, target)
            expected.add(name)
            instance = existing.get(name)
            if instance is None:
                self.store.create(self._new_instance(ctx, name, target), timeout=deadline.remaining())
                return ReconcileResult.UPDATED

            if instance.deletion_timestamp is not None:
                result = self._teardown(ctx, instance)
            else:
                result = self._converge(ctx, instance, target)
            if result is ReconcileResult.UPDATED:
                return result
            needs_retry = needs_retry or result is ReconcileResult.REQUEUE

        for name in sorted(set(existing) - expected):
            orphan = existing[name]
            result = self._teardown(ctx, orphan)
            if result is ReconcileResult.UPDATED:
                return result
            if result is ReconcileResult.REQUEUE:
                needs_retry = True
                continue
            if orphan.deletion_timestamp is None:
                logger.info("Deleting BpfProgram %s, its attach target is gone", orphan.name)
                self.store.delete(orphan, timeout=deadline.remaining())
                return ReconcileResult.UPDATED

        return ReconcileResult.REQUEUE if needs_retry else ReconcileResult.UNCHANGED

    def _converge_existing(self, ctx: ReconcileContext, existing: Mapping[str, Instance]) -> ReconcileResult:
        needs_retry = False
        for name in sorted(existing):
            instance = existing[name]
            target = AttachTarget(annotations=instance.annotations)
            result = self._converge(ctx, instance, target)
            if result is ReconcileResult.UPDATED:
                return result
            needs_retry = needs_retry or result is ReconcileResult.REQUEUE
        return ReconcileResult.REQUEUE if needs_retry else ReconcileResult.UNCHANGED

    def _report_config_error(
        self,
        ctx: ReconcileContext,
        existing: Mapping[str, Instance],
        message: str,
    ) -> ReconcileResult:
        condition = conditions.build(ConditionType.CONFIG_ERROR, message)
        for name in sorted(existing):
            instance = existing[name]
            result = self._record(ctx, instance, StepOutcome(condition, self._live_kernel_id(ctx, instance)))
            if result is not None:
                return result
        return ReconcileResult.UNCHANGED

    def _new_instance(self, ctx: ReconcileContext, name: str, target: AttachTarget) -> Instance:
        spec = ctx.spec
        logger.info("Creating BpfProgram %s for %s %s", name, spec.program_type.kind, spec.name)
        return Instance(
            name=name,
            program_type=spec.program_type,
            node=ctx.node.name,
            owner=OwnerReference(kind=spec.program_type.kind, name=spec.name, uid=spec.uid),
            labels={OWNER_LABEL: spec.name, HOST_LABEL: ctx.node.name},
            annotations=dict(target.annotations),
            finalizers=[spec.program_type.finalizer],
        )

    # -- per-instance steps ----------------------------------------------

    def _converge(self, ctx: ReconcileContext, instance: Instance, target: AttachTarget) -> ReconcileResult | None:
        if ctx.config_error is not None:
            outcome = StepOutcome(
                conditions.build(ConditionType.CONFIG_ERROR, ctx.config_error),
                self._live_kernel_id(ctx, instance),
            )
        else:
            outcome = self._daemon_step(ctx, instance, target)
        return self._record(ctx, instance, outcome)

    def _record(self, ctx: ReconcileContext, instance: Instance, outcome: StepOutcome) -> ReconcileResult | None:
        """Persist one step's outcome, at most one write.

        Returns UPDATED after a write, REQUEUE when a retryable failure is
        already recorded, None when the Instance is settled.
        """
        condition_type = outcome.condition.type
        if condition_type in conditions.GATING_CONDITIONS:
            if self.store.set_condition(instance, outcome.condition, timeout=ctx.deadline.remaining()):
                return ReconcileResult.UPDATED
        if self.store.set_kernel_id(instance, outcome.kernel_id, timeout=ctx.deadline.remaining()):
            return ReconcileResult.UPDATED
        if self.store.set_condition(instance, outcome.condition, timeout=ctx.deadline.remaining()):
            return ReconcileResult.UPDATED
        if condition_type in conditions.RETRYABLE_CONDITIONS:
            return ReconcileResult.REQUEUE
        return None

    def _blocking_condition(self, ctx: ReconcileContext) -> Condition | None:
        if not ctx.is_selected:
            return conditions.build(ConditionType.NOT_SELECTED)
        if not ctx.map_owner.is_blocking:
            return None
        if not ctx.map_owner.is_found:
            return conditions.build(ConditionType.MAP_OWNER_NOT_FOUND)
        return conditions.build(ConditionType.MAP_OWNER_NOT_LOADED)

    def _daemon_step(self, ctx: ReconcileContext, instance: Instance, target: AttachTarget) -> StepOutcome:
        """Bring the daemon in line for one Instance; no store writes."""
        existing = ctx.loaded.get(instance.uid)
        blocked = self._blocking_condition(ctx)

        if existing is None:
            if blocked is not None:
                return StepOutcome(blocked, None)
            request, error = self._load_request(ctx, instance, target)
            if request is None:
                return StepOutcome(error, None)
            return self._load(ctx, request)

        if blocked is not None:
            logger.info("Unloading BpfProgram %s: %s", instance.name, blocked.message)
            failure = self._unload(ctx, instance, existing)
            return failure or StepOutcome(blocked, None)

        request, error = self._load_request(ctx, instance, target)
        if request is None:
            return StepOutcome(error, existing.kernel_id)

        same, reasons = ctx.translator.same_state(existing, request)
        if same:
            return StepOutcome(conditions.build(ConditionType.LOADED), existing.kernel_id)

        logger.info("BpfProgram %s drifted (%s), reloading", instance.name, "; ".join(reasons))
        failure = self._unload(ctx, instance, existing)
        return failure or self._load(ctx, request)

    def _load_request(
        self,
        ctx: ReconcileContext,
        instance: Instance,
        target: AttachTarget,
    ) -> tuple[LoadRequest | None, Condition | None]:
        if ctx.bytecode is None:
            message = ctx.bytecode_error or "bytecode source could not be resolved"
            return None, conditions.build(ConditionType.BYTECODE_SELECTOR_ERROR, message)
        request = ctx.translator.build_load_request(
            ctx.spec,
            target,
            ctx.bytecode,
            instance.uid,
            map_owner_id=ctx.map_owner.owner_kernel_id if ctx.map_owner.is_set else None,
        )
        return request, None

    def _load(self, ctx: ReconcileContext, request: LoadRequest) -> StepOutcome:
        try:
            program = self.daemon.load(request, timeout=ctx.deadline.remaining())
        except DaemonError as exc:
            logger.error("Failed to load program %s: %s", request.program_id, exc)
            return StepOutcome(conditions.build(ConditionType.NOT_LOADED, str(exc)), None)
        return StepOutcome(conditions.build(ConditionType.LOADED), program.kernel_id)

    def _unload(self, ctx: ReconcileContext, instance: Instance, existing: LoadedProgram) -> StepOutcome | None:
        """Unload; returns a NotUnloaded outcome on failure, None on success."""
        try:
            self.daemon.unload(instance.uid, timeout=ctx.deadline.remaining())
        except DaemonError as exc:
            logger.error("Failed to unload BpfProgram %s: %s", instance.name, exc)
            return StepOutcome(conditions.build(ConditionType.NOT_UNLOADED, str(exc)), existing.kernel_id)
        return None

    def _live_kernel_id(self, ctx: ReconcileContext, instance: Instance) -> int | None:
        program = ctx.loaded.get(instance.uid)
        return program.kernel_id if program is not None else None

    # -- teardown --------------------------------------------------------

    def _teardown_all(self, ctx: ReconcileContext, existing: Mapping[str, Instance]) -> ReconcileResult:
        needs_retry = False
        for name in sorted(existing):
            result = self._teardown(ctx, existing[name])
            if result is ReconcileResult.UPDATED:
                return result
            needs_retry = needs_retry or result is ReconcileResult.REQUEUE
        return ReconcileResult.REQUEUE if needs_retry else ReconcileResult.UNCHANGED

    def _teardown(self, ctx: ReconcileContext, instance: Instance) -> ReconcileResult | None:
        """Unload, mark Unloaded, clear the kernel id, then release the finalizer.

        One write per call; returns None once the Instance holds no
        finalizer and nothing is loaded for it.
        """
        existing = ctx.loaded.get(instance.uid)
        if existing is not None:
            failure = self._unload(ctx, instance, existing)
            if failure is not None:
                if self.store.set_condition(instance, failure.condition, timeout=ctx.deadline.remaining()):
                    return ReconcileResult.UPDATED
                return ReconcileResult.REQUEUE

        timeout = ctx.deadline.remaining()
        if self.store.set_condition(instance, conditions.build(ConditionType.UNLOADED), timeout=timeout):
            return ReconcileResult.UPDATED
        if self.store.set_kernel_id(instance, None, timeout=timeout):
            return ReconcileResult.UPDATED
        if self.store.remove_finalizer(instance, ctx.spec.program_type.finalizer, timeout=timeout):
            return ReconcileResult.UPDATED
        return None
