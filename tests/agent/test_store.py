"""Tests for the Instance store: CRUD, optimistic concurrency and error mapping."""

from __future__ import annotations

import pytest
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError

from agent import conditions
from agent.errors import ConflictError, StoreError
from agent.models import ConditionType, Instance, OwnerReference, ProgramType
from agent.store import InstanceStore, api_errors


def _make_instance(name: str = "fentry-example-node-1-do-unlinkat", node: str = "node-1") -> Instance:
    """Create an unsaved Instance."""
    return Instance(
        name=name,
        program_type=ProgramType.FENTRY,
        node=node,
        owner=OwnerReference(kind="FentryProgram", name="fentry-example", uid="spec-uid"),
        labels={"bpfman.io/ownedByProgram": "fentry-example", "kubernetes.io/hostname": node},
        finalizers=[ProgramType.FENTRY.finalizer],
    )


class TestApiErrors:
    """Test translation of client failures."""

    def test_conflict(self) -> None:
        """HTTP 409 maps to ConflictError."""
        with pytest.raises(ConflictError):
            with api_errors("update"):
                raise ApiException(status=409, reason="Conflict")

    def test_other_status_is_store_error(self) -> None:
        """Other API statuses map to StoreError."""
        with pytest.raises(StoreError, match="500"):
            with api_errors("update"):
                raise ApiException(status=500, reason="Internal Server Error")

    def test_connection_failure_is_store_error(self) -> None:
        """A connection failure maps to StoreError."""
        with pytest.raises(StoreError):
            with api_errors("list"):
                raise MaxRetryError(None, "/apis", "connection refused")


class TestInstanceStore:
    """Test Instance CRUD through the fake API."""

    def test_create_assigns_uid(self, store: InstanceStore) -> None:
        """Created Instances come back with a uid."""
        created = store.create(_make_instance())
        assert created.uid
        assert created.resource_version

    def test_list_owned_filters_by_node(self, store: InstanceStore) -> None:
        """Only this node's Instances are listed."""
        store.create(_make_instance())
        store.create(_make_instance(name="fentry-example-node-2-do-unlinkat", node="node-2"))

        owned = store.list_owned("fentry-example", "node-1")
        assert list(owned) == ["fentry-example-node-1-do-unlinkat"]

    def test_get_missing_is_none(self, store: InstanceStore) -> None:
        """A missing Instance reads as None."""
        assert store.get("nope") is None

    def test_set_condition_writes_status_once(self, store: InstanceStore, custom_api) -> None:
        """Setting the same condition twice writes once."""
        created = store.create(_make_instance())
        custom_api.clear_writes()

        assert store.set_condition(created, conditions.build(ConditionType.LOADED))
        assert custom_api.writes == [("status", "bpfprograms", created.name)]

        current = store.get(created.name)
        assert current.condition_type is ConditionType.LOADED
        assert not store.set_condition(current, conditions.build(ConditionType.LOADED))

    def test_set_condition_does_not_mutate_argument(self, store: InstanceStore) -> None:
        """The caller's Instance is left unchanged."""
        created = store.create(_make_instance())
        store.set_condition(created, conditions.build(ConditionType.LOADED))
        assert created.condition is None

    def test_stale_write_conflicts(self, store: InstanceStore) -> None:
        """A write from an old resourceVersion conflicts."""
        created = store.create(_make_instance())
        store.set_kernel_id(created, 7)

        with pytest.raises(ConflictError):
            store.set_kernel_id(created, 8)

    def test_set_kernel_id_and_clear(self, store: InstanceStore) -> None:
        """The kernel id can be recorded and cleared."""
        created = store.create(_make_instance())
        assert store.set_kernel_id(created, 7)
        current = store.get(created.name)
        assert current.kernel_id == 7
        assert store.set_kernel_id(current, None)
        assert store.get(created.name).kernel_id is None

    def test_remove_finalizer(self, store: InstanceStore) -> None:
        """Removing the finalizer writes once."""
        created = store.create(_make_instance())
        assert store.remove_finalizer(created, ProgramType.FENTRY.finalizer)
        current = store.get(created.name)
        assert current.finalizers == []
        assert not store.remove_finalizer(current, ProgramType.FENTRY.finalizer)

    def test_delete_is_finalizer_gated(self, store: InstanceStore) -> None:
        """A finalized Instance is only marked until the finalizer goes."""
        created = store.create(_make_instance())
        store.delete(created)

        pending = store.get(created.name)
        assert pending is not None
        assert pending.deletion_timestamp is not None

        store.remove_finalizer(pending, ProgramType.FENTRY.finalizer)
        assert store.get(created.name) is None

    def test_delete_missing_is_noop(self, store: InstanceStore) -> None:
        """Deleting a missing Instance is not an error."""
        store.delete(_make_instance(name="never-created"))
