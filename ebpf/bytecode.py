"""Bytecode source resolution.

Turns a declared BytecodeSelector into the BytecodeLocation a load
request carries:
- image: url, pull policy as the daemon's integer, and registry
  credentials read from a kubernetes.io/dockerconfigjson pull secret
- path: a bytecode file already present on the node
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Callable

from agent.errors import BytecodeError, NotFoundError
from agent.models import BytecodeSelector, PullPolicy, SecretReference
from ebpf.models import BytecodeLocation, ImageLocation

logger = logging.getLogger(__name__)

PULL_POLICIES: dict[PullPolicy, int] = {
    PullPolicy.ALWAYS: 0,
    PullPolicy.IF_NOT_PRESENT: 1,
    PullPolicy.NEVER: 2,
}

DOCKER_CONFIG_KEY = ".dockerconfigjson"
DOCKER_HUB_DOMAIN = "docker.io"
# Docker Hub credentials are keyed under this URL in a docker config file.
DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"

# name[:tag][@digest], name being slash-separated lowercase components,
# optionally prefixed with a registry host[:port].
_IMAGE_REFERENCE = re.compile(
    r"^(?:[a-zA-Z0-9.-]+(?::[0-9]+)?/)?"
    r"[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*"
    r"(?::[\w][\w.-]{0,127})?"
    r"(?:@[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,})?$"
)

SecretReader = Callable[[str, str], dict[str, bytes]]


def pull_policy_value(policy: PullPolicy | None) -> int:
    """Daemon integer for a pull policy; unset means IfNotPresent."""
    if policy is None:
        return PULL_POLICIES[PullPolicy.IF_NOT_PRESENT]
    return PULL_POLICIES.get(policy, PULL_POLICIES[PullPolicy.IF_NOT_PRESENT])


def image_domain(url: str) -> str:
    """Registry domain of an image reference.

    The first path component is a registry only if it looks like a host
    (has a dot or a port, or is ``localhost``); otherwise the image lives
    on Docker Hub.
    """
    if "/" not in url:
        return DOCKER_HUB_DOMAIN
    first = url.split("/", 1)[0]
    if "." in first or ":" in first or first == "localhost":
        return first
    return DOCKER_HUB_DOMAIN


def registry_auth_key(url: str) -> str:
    domain = image_domain(url)
    if domain in (DOCKER_HUB_DOMAIN, ""):
        return DOCKER_HUB_AUTH_KEY
    return domain


def parse_docker_config(data: dict[str, bytes]) -> dict[str, tuple[str, str]]:
    """Extract per-registry (username, password) pairs from secret data.

    Raises:
        BytecodeError: If the secret is not a readable docker config.
    """
    raw = data.get(DOCKER_CONFIG_KEY)
    if raw is None:
        raise BytecodeError(f"pull secret has no {DOCKER_CONFIG_KEY} key")
    try:
        auths = json.loads(raw).get("auths", {})
    except (ValueError, AttributeError) as exc:
        raise BytecodeError(f"pull secret is not valid docker config JSON: {exc}") from exc

    creds: dict[str, tuple[str, str]] = {}
    for registry, entry in auths.items():
        username = entry.get("username", "")
        password = entry.get("password", "")
        if not username and entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise BytecodeError(f"pull secret auth for {registry} is not valid base64: {exc}") from exc
            username, _, password = decoded.partition(":")
        creds[registry] = (username, password)
    return creds


class BytecodeResolver:
    """Resolve bytecode selectors, reading pull secrets on demand.

    Args:
        read_secret: Callable returning a secret's decoded data given
            (name, namespace); raises NotFoundError if it does not exist.
    """

    def __init__(self, read_secret: SecretReader) -> None:
        self._read_secret: SecretReader = read_secret

    def resolve(self, selector: BytecodeSelector) -> BytecodeLocation:
        """Resolve a selector to a daemon bytecode location.

        Raises:
            BytecodeError: If the selector is empty, ambiguous, names an
                invalid image, or its pull secret is missing or unusable.
        """
        if selector.image is not None and selector.path:
            raise BytecodeError("bytecode selector sets both image and path")
        if selector.image is None:
            if not selector.path:
                raise BytecodeError("bytecode selector sets neither image nor path")
            return BytecodeLocation(file=selector.path)

        image = selector.image
        if not _IMAGE_REFERENCE.match(image.url):
            raise BytecodeError(f"invalid image reference {image.url!r}")

        username: str | None = None
        password: str | None = None
        if image.image_pull_secret is not None:
            username, password = self._credentials(image.url, image.image_pull_secret)

        return BytecodeLocation(
            image=ImageLocation(
                url=image.url,
                image_pull_policy=pull_policy_value(image.image_pull_policy),
                username=username,
                password=password,
            )
        )

    def _credentials(self, url: str, ref: SecretReference) -> tuple[str, str]:
        try:
            data = self._read_secret(ref.name, ref.namespace)
        except NotFoundError as exc:
            raise BytecodeError(f"pull secret {ref.namespace}/{ref.name} not found") from exc

        creds = parse_docker_config(data)
        if not creds:
            raise BytecodeError(f"no registry credentials found in secret {ref.namespace}/{ref.name}")

        key = registry_auth_key(url)
        if key not in creds:
            logger.warning("Pull secret %s/%s has no credentials for %s", ref.namespace, ref.name, key)
            return "", ""
        return creds[key]
