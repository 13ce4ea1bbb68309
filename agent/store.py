"""Per-node Instance store backed by the Kubernetes custom objects API.

Wraps BpfProgram CRUD so the engine deals in Instance models and agent
errors, never in raw bodies or ApiException. Writes carry the Instance's
resourceVersion, so a write based on a stale read fails with
ConflictError instead of clobbering someone else's change.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from agent import conditions
from agent.errors import ConflictError, NotFoundError, StoreError
from agent.models import (
    API_GROUP,
    API_VERSION,
    HOST_LABEL,
    INSTANCE_PLURAL,
    OWNER_LABEL,
    Condition,
    Instance,
)
from agent.selector import format_label_map

logger = logging.getLogger(__name__)


@contextmanager
def api_errors(action: str) -> Iterator[None]:
    """Translate Kubernetes client failures into agent errors."""
    try:
        yield
    except ApiException as exc:
        if exc.status == 409:
            raise ConflictError(f"{action}: conflict: {exc.reason}") from exc
        if exc.status == 404:
            raise NotFoundError(f"{action}: not found") from exc
        raise StoreError(f"{action}: API error {exc.status}: {exc.reason}") from exc
    except HTTPError as exc:
        raise StoreError(f"{action}: {exc}") from exc


class InstanceStore:
    """CRUD and status access for BpfProgram objects.

    Args:
        api: Custom objects API client.
        group: API group of the BpfProgram CRD.
        version: API version of the BpfProgram CRD.
    """

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str = API_GROUP,
        version: str = API_VERSION,
    ) -> None:
        self.api: client.CustomObjectsApi = api
        self.group: str = group
        self.version: str = version

    def _kwargs(self, timeout: float | None) -> dict[str, Any]:
        return {"_request_timeout": timeout} if timeout is not None else {}

    def list(self, labels: dict[str, str], timeout: float | None = None) -> list[Instance]:
        """List Instances whose labels contain every entry of ``labels``."""
        with api_errors("list bpfprograms"):
            body = self.api.list_cluster_custom_object(
                self.group,
                self.version,
                INSTANCE_PLURAL,
                label_selector=format_label_map(labels),
                **self._kwargs(timeout),
            )
        return [Instance.from_object(item) for item in body.get("items", [])]

    def list_owned(self, owner_name: str, node: str, timeout: float | None = None) -> dict[str, Instance]:
        """Instances owned by a declared spec on one node, keyed by name."""
        instances = self.list({OWNER_LABEL: owner_name, HOST_LABEL: node}, timeout=timeout)
        return {instance.name: instance for instance in instances}

    def get(self, name: str, timeout: float | None = None) -> Instance | None:
        try:
            with api_errors(f"get bpfprogram {name}"):
                body = self.api.get_cluster_custom_object(
                    self.group, self.version, INSTANCE_PLURAL, name, **self._kwargs(timeout)
                )
        except NotFoundError:
            return None
        return Instance.from_object(body)

    def create(self, instance: Instance, timeout: float | None = None) -> Instance:
        body = instance.to_object()
        body["metadata"].pop("resourceVersion", None)
        body["metadata"].pop("uid", None)
        with api_errors(f"create bpfprogram {instance.name}"):
            created = self.api.create_cluster_custom_object(
                self.group, self.version, INSTANCE_PLURAL, body, **self._kwargs(timeout)
            )
        logger.info("Created BpfProgram %s", instance.name)
        return Instance.from_object(created)

    def update(self, instance: Instance, timeout: float | None = None) -> Instance:
        """Write metadata and spec (finalizers, annotations, kernel id)."""
        with api_errors(f"update bpfprogram {instance.name}"):
            updated = self.api.replace_cluster_custom_object(
                self.group,
                self.version,
                INSTANCE_PLURAL,
                instance.name,
                instance.to_object(),
                **self._kwargs(timeout),
            )
        return Instance.from_object(updated)

    def update_status(self, instance: Instance, timeout: float | None = None) -> Instance:
        """Write the status subresource (the condition)."""
        with api_errors(f"update bpfprogram {instance.name} status"):
            updated = self.api.replace_cluster_custom_object_status(
                self.group,
                self.version,
                INSTANCE_PLURAL,
                instance.name,
                instance.to_object(),
                **self._kwargs(timeout),
            )
        return Instance.from_object(updated)

    def delete(self, instance: Instance, timeout: float | None = None) -> None:
        try:
            with api_errors(f"delete bpfprogram {instance.name}"):
                self.api.delete_cluster_custom_object(
                    self.group, self.version, INSTANCE_PLURAL, instance.name, **self._kwargs(timeout)
                )
        except NotFoundError:
            return
        logger.info("Deleted BpfProgram %s", instance.name)

    def set_condition(self, instance: Instance, condition: Condition, timeout: float | None = None) -> bool:
        """Replace the Instance's condition if it differs.

        Returns:
            True if a write was made.
        """
        pending = instance.model_copy(deep=True)
        if not conditions.transition(pending, condition):
            return False
        logger.debug(
            "Updating BpfProgram %s condition %s -> %s",
            instance.name, instance.condition_type, condition.type,
        )
        self.update_status(pending, timeout=timeout)
        return True

    def remove_finalizer(self, instance: Instance, finalizer: str, timeout: float | None = None) -> bool:
        """Drop ``finalizer`` from the Instance if present.

        Returns:
            True if a write was made.
        """
        if finalizer not in instance.finalizers:
            return False
        pending = instance.model_copy(deep=True)
        pending.finalizers = [f for f in pending.finalizers if f != finalizer]
        logger.info("Removing finalizer from BpfProgram %s", instance.name)
        self.update(pending, timeout=timeout)
        return True

    def set_kernel_id(self, instance: Instance, kernel_id: int | None, timeout: float | None = None) -> bool:
        """Record the daemon's live kernel id (None clears it).

        Returns:
            True if a write was made.
        """
        if instance.kernel_id == kernel_id:
            return False
        pending = instance.model_copy(deep=True)
        pending.kernel_id = kernel_id
        logger.info("Updating BpfProgram %s kernel id %s -> %s", instance.name, instance.kernel_id, kernel_id)
        self.update(pending, timeout=timeout)
        return True
