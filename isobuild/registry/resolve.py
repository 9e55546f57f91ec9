"""Image digest resolution against OCI/Docker registries.

This module handles:
- Parsing ``[registry/]repository[:tag][@digest]`` references
- Anonymous bearer token negotiation on ``401`` challenges
- ``HEAD`` manifest requests returning ``Docker-Content-Digest``
- Pinning recipe images to ``name:tag@sha256:...``
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from isobuild.config import get_settings

if TYPE_CHECKING:
    from isobuild.config import Settings
    from isobuild.recipes.schema import RecipeSchema

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")
DEFAULT_TAG = "latest"

# Timeout for registry requests (seconds)
REGISTRY_TIMEOUT = 30

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Raised when a registry lookup fails."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        """Initialize RegistryError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference.

    Attributes:
        name: Reference as written, without the digest.
        registry: Registry host (``docker.io`` for Docker Hub).
        repository: Repository path (``library/`` added on Docker Hub).
        tag: Tag, if any.
        digest: Digest, if already pinned.
    """

    name: str
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def reference(self) -> str:
        """The manifest reference to look up (digest, tag or ``latest``)."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DOCKER_HUB_REGISTRY

    def pinned(self, digest: str) -> str:
        """Return the reference pinned to a digest."""
        return f"{self.name}@{digest}"

    def __str__(self) -> str:
        return self.pinned(self.digest) if self.digest else self.name


def parse_image_reference(value: str) -> ImageReference:
    """Parse an image reference.

    Args:
        value: Reference such as ``rust:slim-buster`` or
            ``ghcr.io/org/app:1.0@sha256:...``.

    Returns:
        ImageReference.

    Raises:
        RegistryError: If the reference is malformed.
    """
    value = value.strip()
    if not value or any(c.isspace() for c in value):
        raise RegistryError(
            f"Invalid image reference: {value!r}", code="invalid_reference"
        )

    name, _, digest = value.partition("@")
    if digest and not DIGEST_PATTERN.match(digest):
        raise RegistryError(f"Invalid digest in {value!r}", code="invalid_reference")

    registry = DOCKER_HUB_REGISTRY
    remainder = name
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry = first
        remainder = rest

    tag: str | None = None
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1 :]
        if not tag:
            raise RegistryError(f"Empty tag in {value!r}", code="invalid_reference")

    if not remainder:
        raise RegistryError(f"Missing repository in {value!r}", code="invalid_reference")

    if registry in DOCKER_HUB_ALIASES:
        registry = DOCKER_HUB_REGISTRY
        if "/" not in remainder:
            remainder = f"library/{remainder}"

    return ImageReference(
        name=name,
        registry=registry,
        repository=remainder,
        tag=tag,
        digest=digest or None,
    )


def registry_base_url(ref: ImageReference, docker_hub_url: str) -> str:
    """Return the registry API base URL for a reference."""
    if ref.is_docker_hub:
        return docker_hub_url.rstrip("/")
    return f"https://{ref.registry}"


def parse_bearer_challenge(header: str) -> dict[str, str]:
    """Parse a ``WWW-Authenticate: Bearer ...`` challenge.

    Returns:
        Challenge parameters (realm, service, scope).

    Raises:
        RegistryError: If the challenge is not a Bearer challenge.
    """
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise RegistryError(
            f"Unsupported registry auth scheme: {scheme}", code="auth_unsupported"
        )
    challenge = dict(_CHALLENGE_PARAM.findall(params))
    if "realm" not in challenge:
        raise RegistryError("Bearer challenge without realm", code="auth_unsupported")
    return challenge


def fetch_token(
    client: httpx.Client,
    challenge: dict[str, str],
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Obtain an anonymous pull token for a challenge.

    Raises:
        RegistryError: If the token endpoint fails.
    """
    params = {k: v for k, v in challenge.items() if k in ("service", "scope")}
    try:
        response = client.get(challenge["realm"], params=params, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        raise RegistryError(
            f"HTTP error fetching registry token: {e.response.status_code}",
            code="auth_failed",
        ) from e
    except httpx.TimeoutException as e:
        raise RegistryError(
            f"Timeout fetching registry token from {challenge['realm']}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise RegistryError(
            f"Network error fetching registry token: {e}",
            code="network_error",
        ) from e
    except ValueError as e:
        raise RegistryError(
            f"Invalid token response: {e}", code="auth_failed"
        ) from e

    token = data.get("token") or data.get("access_token")
    if not token:
        raise RegistryError("Token response carries no token", code="auth_failed")
    return token


def resolve_digest(
    client: httpx.Client,
    ref: ImageReference,
    docker_hub_url: str = "https://registry-1.docker.io",
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Resolve a reference to its manifest digest.

    Already pinned references are returned without a request.

    Args:
        client: HTTP client.
        ref: Parsed image reference.
        docker_hub_url: Registry API URL used for Docker Hub references.
        timeout: Request timeout in seconds.

    Returns:
        ``sha256:...`` digest of the manifest (or manifest list).

    Raises:
        RegistryError: If the registry lookup fails.
    """
    if ref.digest:
        return ref.digest

    url = (
        f"{registry_base_url(ref, docker_hub_url)}/v2/{ref.repository}"
        f"/manifests/{ref.reference}"
    )
    headers = {"Accept": MANIFEST_ACCEPT}
    logger.debug("Resolving %s via %s", ref.name, url)

    try:
        response = client.head(url, headers=headers, timeout=timeout)
        if response.status_code == 401:
            challenge_header = response.headers.get("WWW-Authenticate", "")
            challenge = parse_bearer_challenge(challenge_header)
            token = fetch_token(client, challenge, timeout=timeout)
            headers["Authorization"] = f"Bearer {token}"
            response = client.head(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        code = "not_found" if e.response.status_code == 404 else "http_error"
        raise RegistryError(
            f"HTTP error resolving {ref.name}: {e.response.status_code} "
            f"{e.response.reason_phrase}",
            code=code,
        ) from e
    except httpx.TimeoutException as e:
        raise RegistryError(f"Timeout resolving {ref.name}", code="timeout") from e
    except httpx.RequestError as e:
        raise RegistryError(
            f"Network error resolving {ref.name}: {e}", code="network_error"
        ) from e

    digest = response.headers.get("Docker-Content-Digest")
    if not digest or not DIGEST_PATTERN.match(digest):
        raise RegistryError(
            f"Registry returned no usable digest for {ref.name}", code="no_digest"
        )

    logger.info("Resolved %s to %s", ref.name, digest)
    return digest


def pin_image(
    client: httpx.Client,
    image: str,
    docker_hub_url: str = "https://registry-1.docker.io",
    timeout: float = REGISTRY_TIMEOUT,
) -> str:
    """Return ``image`` pinned to its current digest."""
    ref = parse_image_reference(image)
    return ref.pinned(resolve_digest(client, ref, docker_hub_url, timeout))


def pin_recipe(
    recipe: RecipeSchema,
    client: httpx.Client | None = None,
    settings: Settings | None = None,
) -> RecipeSchema:
    """Return a copy of a recipe with both images pinned to digests.

    Args:
        recipe: Recipe to pin.
        client: Optional HTTP client; one is created from settings if omitted.
        settings: Application settings.

    Returns:
        New RecipeSchema with pinned toolchain and base images.

    Raises:
        RegistryError: If offline or a lookup fails.
    """
    if settings is None:
        settings = get_settings()

    if settings.offline:
        raise RegistryError(
            "Cannot resolve image digests in offline mode", code="offline"
        )

    def _pin_all(http: httpx.Client) -> tuple[str, str]:
        return (
            pin_image(
                http,
                recipe.builder.toolchain_image,
                settings.registry_url,
                settings.registry_timeout,
            ),
            pin_image(
                http,
                recipe.runtime.base_image,
                settings.registry_url,
                settings.registry_timeout,
            ),
        )

    if client is None:
        with httpx.Client(follow_redirects=True) as http:
            toolchain, base = _pin_all(http)
    else:
        toolchain, base = _pin_all(client)

    return recipe.model_copy(
        update={
            "builder": recipe.builder.model_copy(update={"toolchain_image": toolchain}),
            "runtime": recipe.runtime.model_copy(update={"base_image": base}),
        }
    )


__all__ = [
    "DOCKER_HUB_REGISTRY",
    "MANIFEST_ACCEPT",
    "ImageReference",
    "RegistryError",
    "fetch_token",
    "parse_bearer_challenge",
    "parse_image_reference",
    "pin_image",
    "pin_recipe",
    "registry_base_url",
    "resolve_digest",
]
