"""Read-only access to declared specs, the agent's node and pull secrets."""

from __future__ import annotations

import base64
import logging

from kubernetes import client
from pydantic import ValidationError

from agent.errors import NotFoundError
from agent.models import API_GROUP, API_VERSION, DeclaredSpec, Node, ProgramType
from agent.store import api_errors

logger = logging.getLogger(__name__)


def node_from_v1(v1_node: client.V1Node) -> Node:
    addresses = (v1_node.status.addresses if v1_node.status else None) or []
    return Node(
        name=v1_node.metadata.name,
        labels=v1_node.metadata.labels or {},
        internal_ips=[a.address for a in addresses if a.type == "InternalIP"],
    )


class ClusterReader:
    """Reads the cluster objects the engine converges from.

    Args:
        custom_api: Custom objects API client.
        core_api: Core v1 API client.
        group: API group of the *Program CRDs.
        version: API version of the *Program CRDs.
    """

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        group: str = API_GROUP,
        version: str = API_VERSION,
    ) -> None:
        self.custom_api: client.CustomObjectsApi = custom_api
        self.core_api: client.CoreV1Api = core_api
        self.group: str = group
        self.version: str = version

    def list_specs(self, program_type: ProgramType) -> list[DeclaredSpec]:
        """All declared specs of one program type.

        Bodies that fail validation are logged and skipped so one broken
        object does not stall every other spec of its type.
        """
        with api_errors(f"list {program_type.plural}"):
            body = self.custom_api.list_cluster_custom_object(self.group, self.version, program_type.plural)

        specs: list[DeclaredSpec] = []
        for item in body.get("items", []):
            try:
                specs.append(DeclaredSpec.from_object(item, program_type))
            except (ValidationError, KeyError) as exc:
                name = (item.get("metadata") or {}).get("name", "<unnamed>")
                logger.error("Skipping malformed %s %s: %s", program_type.kind, name, exc)
        return specs

    def get_spec(self, program_type: ProgramType, name: str) -> DeclaredSpec | None:
        """One declared spec, or None when it is gone or malformed."""
        try:
            with api_errors(f"get {program_type.kind} {name}"):
                body = self.custom_api.get_cluster_custom_object(
                    self.group, self.version, program_type.plural, name
                )
        except NotFoundError:
            return None
        try:
            return DeclaredSpec.from_object(body, program_type)
        except (ValidationError, KeyError) as exc:
            logger.error("Skipping malformed %s %s: %s", program_type.kind, name, exc)
            return None

    def get_node(self, name: str) -> Node:
        with api_errors(f"get node {name}"):
            v1_node = self.core_api.read_node(name)
        return node_from_v1(v1_node)

    def read_secret(self, name: str, namespace: str) -> dict[str, bytes]:
        """Decoded data of a secret.

        Raises:
            NotFoundError: If the secret does not exist.
        """
        with api_errors(f"read secret {namespace}/{name}"):
            secret = self.core_api.read_namespaced_secret(name, namespace)
        return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}
