"""Shared in-memory fakes for the object store and the loader daemon."""

from __future__ import annotations

import copy
import itertools
from datetime import datetime, timezone
from typing import Any

import pytest
from kubernetes.client.exceptions import ApiException

from agent.engine import ConvergenceEngine
from agent.errors import DaemonError, DaemonUnavailable, NotFoundError
from agent.models import Node, ProgramType
from agent.resolver import MapOwnerResolver
from agent.store import InstanceStore
from ebpf.bytecode import BytecodeResolver
from ebpf.models import LoadedProgram, LoadRequest


def _parse_selector(selector: str | None) -> dict[str, str]:
    if not selector:
        return {}
    pairs = (part.split("=", 1) for part in selector.split(",") if part)
    return {key: value for key, value in pairs}


class FakeCustomObjectsApi:
    """Cluster-scoped custom objects held in memory.

    Enforces what the engine relies on: resourceVersion checks on replace,
    finalizer-gated deletion, status written only through the status
    call, and owner-reference garbage collection.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, dict[str, Any]]] = {}
        self.writes: list[tuple[str, str, str]] = []
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    # -- test helpers ------------------------------------------------------

    def seed(self, plural: str, body: dict[str, Any]) -> dict[str, Any]:
        """Insert an object without recording a write."""
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata["resourceVersion"] = str(next(self._versions))
        self.objects.setdefault(plural, {})[metadata["name"]] = obj
        return copy.deepcopy(obj)

    def items(self, plural: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(o) for o in self.objects.get(plural, {}).values()]

    def clear_writes(self) -> None:
        self.writes.clear()

    # -- CustomObjectsApi surface -----------------------------------------

    def _get(self, plural: str, name: str) -> dict[str, Any]:
        try:
            return self.objects[plural][name]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def list_cluster_custom_object(self, group: str, version: str, plural: str, label_selector: str | None = None, **kwargs: Any) -> dict[str, Any]:
        wanted = _parse_selector(label_selector)
        items = [
            copy.deepcopy(obj)
            for obj in self.objects.get(plural, {}).values()
            if all((obj["metadata"].get("labels") or {}).get(k) == v for k, v in wanted.items())
        ]
        return {"items": items}

    def get_cluster_custom_object(self, group: str, version: str, plural: str, name: str, **kwargs: Any) -> dict[str, Any]:
        return copy.deepcopy(self._get(plural, name))

    def create_cluster_custom_object(self, group: str, version: str, plural: str, body: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        name = body["metadata"]["name"]
        if name in self.objects.get(plural, {}):
            raise ApiException(status=409, reason="AlreadyExists")
        self.writes.append(("create", plural, name))
        return self.seed(plural, body)

    def _check_version(self, stored: dict[str, Any], body: dict[str, Any]) -> None:
        sent = body.get("metadata", {}).get("resourceVersion")
        if sent is not None and sent != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")

    def replace_cluster_custom_object(self, group: str, version: str, plural: str, name: str, body: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        stored = self._get(plural, name)
        self._check_version(stored, body)
        self.writes.append(("replace", plural, name))
        metadata = stored["metadata"]
        for key in ("labels", "annotations", "finalizers", "ownerReferences"):
            metadata[key] = copy.deepcopy(body["metadata"].get(key))
        stored["spec"] = copy.deepcopy(body.get("spec"))
        metadata["resourceVersion"] = str(next(self._versions))
        result = copy.deepcopy(stored)
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(plural, name)
        return result

    def replace_cluster_custom_object_status(self, group: str, version: str, plural: str, name: str, body: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        stored = self._get(plural, name)
        self._check_version(stored, body)
        self.writes.append(("status", plural, name))
        stored["status"] = copy.deepcopy(body.get("status"))
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(stored)

    def delete_cluster_custom_object(self, group: str, version: str, plural: str, name: str, **kwargs: Any) -> dict[str, Any]:
        stored = self._get(plural, name)
        self.writes.append(("delete", plural, name))
        self._delete(plural, stored)
        return {"status": "Success"}

    def _delete(self, plural: str, stored: dict[str, Any]) -> None:
        metadata = stored["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                metadata["deletionTimestamp"] = datetime.now(timezone.utc).isoformat()
                metadata["resourceVersion"] = str(next(self._versions))
            return
        self._remove(plural, metadata["name"])

    def _remove(self, plural: str, name: str) -> None:
        removed = self.objects[plural].pop(name, None)
        if removed is None:
            return
        uid = removed["metadata"]["uid"]
        for child_plural, children in self.objects.items():
            for child in list(children.values()):
                owners = child["metadata"].get("ownerReferences") or []
                if any(owner.get("uid") == uid for owner in owners):
                    self._delete(child_plural, child)


class FakeDaemon:
    """Loader daemon double with the DaemonClient interface.

    Records every RPC in ``calls`` as (operation, program id).
    """

    def __init__(self, first_kernel_id: int = 100) -> None:
        self.programs: dict[str, LoadedProgram] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_load: str | None = None
        self.fail_unload: str | None = None
        self.unavailable: bool = False
        self._kernel_ids = itertools.count(first_kernel_id)

    def _check(self) -> None:
        if self.unavailable:
            raise DaemonUnavailable("connection refused")

    def load(self, request: LoadRequest, timeout: float | None = None) -> LoadedProgram:
        self._check()
        self.calls.append(("load", request.program_id))
        if self.fail_load is not None:
            raise DaemonError(self.fail_load, status=500)
        program = LoadedProgram(
            id=request.program_id,
            kernel_id=next(self._kernel_ids),
            name=request.name,
            program_type=request.program_type,
            bytecode=request.bytecode,
            attach=request.attach,
            map_owner_id=request.map_owner_id,
            metadata=dict(request.metadata),
        )
        self.programs[program.id] = program
        return program

    def unload(self, program_id: str, timeout: float | None = None) -> None:
        self._check()
        self.calls.append(("unload", program_id))
        if self.fail_unload is not None:
            raise DaemonError(self.fail_unload, status=500)
        self.programs.pop(program_id, None)

    def list(self, program_type: ProgramType | None = None, timeout: float | None = None) -> dict[str, LoadedProgram]:
        self._check()
        return {
            pid: program
            for pid, program in self.programs.items()
            if program_type is None or program.program_type == program_type.kernel_type
        }

    def get(self, program_id: str, timeout: float | None = None) -> LoadedProgram | None:
        self._check()
        return self.programs.get(program_id)

    def operations(self, name: str) -> list[str]:
        return [pid for op, pid in self.calls if op == name]


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def store(custom_api: FakeCustomObjectsApi) -> InstanceStore:
    return InstanceStore(custom_api)


@pytest.fixture
def secrets() -> dict[tuple[str, str], dict[str, bytes]]:
    """Pull secrets by (name, namespace); tests add entries as needed."""
    return {}


@pytest.fixture
def node() -> Node:
    return Node(
        name="node-1",
        labels={"kubernetes.io/hostname": "node-1", "role": "worker"},
        internal_ips=["10.0.0.5"],
    )


@pytest.fixture
def engine(
    store: InstanceStore,
    daemon: FakeDaemon,
    secrets: dict[tuple[str, str], dict[str, bytes]],
) -> ConvergenceEngine:
    def read_secret(name: str, namespace: str) -> dict[str, bytes]:
        try:
            return secrets[(name, namespace)]
        except KeyError:
            raise NotFoundError(f"secret {namespace}/{name} not found") from None

    return ConvergenceEngine(
        store,
        daemon,
        MapOwnerResolver(store, daemon),
        BytecodeResolver(read_secret),
    )
