"""Map-owner dependency resolution.

A spec may ask to share maps with another program through a label
selector over Instances. Resolution is a single hop on this node: the
owner's own map-owner dependency is not followed.
"""

from __future__ import annotations

import logging

from agent import conditions
from agent.errors import MapOwnerSelectorError, SelectorError
from agent.models import HOST_LABEL, LabelSelector, MapOwnerResolution
from agent.selector import as_label_map
from agent.store import InstanceStore
from ebpf.loader import DaemonClient

logger = logging.getLogger(__name__)


class MapOwnerResolver:
    """Resolve map-owner selectors against this node's Instances.

    Args:
        store: Instance store to list candidate owners from.
        daemon: Loader daemon client, asked for the owner's live kernel id.
    """

    def __init__(self, store: InstanceStore, daemon: DaemonClient) -> None:
        self.store: InstanceStore = store
        self.daemon: DaemonClient = daemon

    def resolve(
        self,
        selector: LabelSelector | None,
        node_name: str,
        timeout: float | None = None,
    ) -> MapOwnerResolution:
        """Find the single Instance a spec shares maps with.

        Args:
            selector: The spec's map-owner selector, if any.
            node_name: Only Instances on this node are candidates.
            timeout: Per-call timeout for store and daemon calls.

        Raises:
            MapOwnerSelectorError: If the selector cannot be reduced to a
                label map or matches more than one Instance.
        """
        if selector is None or selector.is_empty:
            return MapOwnerResolution(is_set=False)

        try:
            labels = as_label_map(selector)
        except SelectorError as exc:
            raise MapOwnerSelectorError(f"invalid map owner selector: {exc}") from exc
        labels[HOST_LABEL] = node_name

        candidates = self.store.list(labels, timeout=timeout)
        if not candidates:
            logger.debug("No map owner matches %s on %s", labels, node_name)
            return MapOwnerResolution(is_set=True, is_found=False)
        if len(candidates) > 1:
            names = ", ".join(sorted(c.name for c in candidates))
            raise MapOwnerSelectorError(
                f"map owner selector matches {len(candidates)} programs ({names}), expected one"
            )

        owner = candidates[0]
        program = self.daemon.get(owner.uid, timeout=timeout) if owner.uid else None
        loaded = program is not None and conditions.is_loaded(owner)
        return MapOwnerResolution(
            is_set=True,
            is_found=True,
            is_loaded=loaded,
            owner_kernel_id=program.kernel_id if program is not None else None,
        )
