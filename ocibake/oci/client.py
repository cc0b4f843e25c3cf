from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass

import httpx

from ocibake.oci.config import CONFIG_MEDIA_TYPE, ImageConfiguration
from ocibake.oci.descriptor import parse_digest
from ocibake.oci.index import DOCKER_MANIFEST_LIST_MEDIA_TYPE, INDEX_MEDIA_TYPE, Index
from ocibake.oci.manifest import MANIFEST_MEDIA_TYPE, Manifest

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"

_BEARER_RE = re.compile(r'^Bearer realm="([^"]+)",\s*service="([^"]+)"')


class RegistryError(Exception):
    """Raised when a registry response breaks the distribution protocol."""


class AuthenticationError(RegistryError):
    """Raised when authentication fails."""


class NotFoundError(RegistryError):
    """Raised when the requested content does not exist."""


class Scheme(str, enum.Enum):
    HTTP = "http"
    HTTPS = "https"


class ClientScope(str, enum.Enum):
    PULL = "pull"
    PUSH = "push"


@dataclass(frozen=True, slots=True)
class NoAuth:
    pass


@dataclass(frozen=True, slots=True)
class TokenAuth:
    secret: str

    def __repr__(self):
        return "TokenAuth(secret='**********')"


@dataclass(frozen=True, slots=True)
class UserPassword:
    username: str
    secret: str

    def __repr__(self):
        return f"UserPassword(username={self.username!r}, secret='**********')"


Authorization = NoAuth | TokenAuth | UserPassword


def _basic_auth(auth: Authorization) -> tuple[str, str] | None:
    """Credentials for the token endpoint, a token is sent as the password"""
    match auth:
        case UserPassword(username, secret):
            return username, secret
        case TokenAuth(secret):
            return "", secret
        case _:
            return None


def _clean_registry(registry: str) -> str:
    registry = registry.removeprefix("https://").removeprefix("http://").rstrip("/")
    if registry == "docker.io":
        return DOCKER_HUB
    return registry


def _parse_www_auth(www_authenticate: str) -> tuple[str, str]:
    """Return (realm, service) from a Bearer WWW-Authenticate header"""
    match = _BEARER_RE.match(www_authenticate.strip())
    if match is None:
        raise AuthenticationError(
            f"Unsupported WWW-Authenticate challenge: {www_authenticate!r}"
        )
    return match[1], match[2]


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class RegistryClient:
    """Client for a single repository of an OCI registry.

    Use `RegistryClient.connect()` to create one, it resolves a bearer token
    once which is then used for the lifetime of the client.
    """

    def __init__(
        self,
        registry: str,
        repo: str,
        scheme: Scheme = Scheme.HTTPS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = _clean_registry(registry)
        self.repo = repo
        self.scheme = Scheme(scheme)
        self.session = httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=2,
            transport=transport,
        )

    def __str__(self):
        return f"{self.registry}/{self.repo}"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.session.aclose()

    @property
    def registry_url(self) -> str:
        return f"{self.scheme.value}://{self.registry}"

    @property
    def repo_url(self) -> str:
        return f"{self.registry_url}/v2/{self.repo}"

    @classmethod
    async def connect(
        cls,
        registry: str,
        repo: str,
        auth: Authorization = NoAuth(),
        scope: ClientScope = ClientScope.PULL,
        scheme: Scheme = Scheme.HTTPS,
        probe_reference: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RegistryClient:
        """Create a client and authenticate it for `scope` on `repo`

        :param probe_reference: probe `/v2/<repo>/manifests/<probe_reference>`
            instead of `/v2/` to discover the token endpoint.
        """
        client = cls(registry, repo, scheme=scheme, transport=transport)
        try:
            await client.authenticate(auth, scope, probe_reference=probe_reference)
        except BaseException:
            await client.aclose()
            raise
        return client

    async def probe_token_endpoint(
        self, probe_reference: str | None = None
    ) -> tuple[str, str | None]:
        """Find the token endpoint and service of this registry

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        if probe_reference is None:
            url = f"{self.registry_url}/v2/"
        else:
            url = f"{self.repo_url}/manifests/{probe_reference}"
        response = await self.session.get(url)
        if response.status_code == 401:
            www_authenticate = response.headers.get("WWW-Authenticate")
            if www_authenticate is None:
                raise AuthenticationError(
                    f"{self.registry} responded 401 without a WWW-Authenticate header"
                )
            realm, service = _parse_www_auth(www_authenticate)
            logger.debug("Found token realm %s for service %s", realm, service)
            return realm, service
        logger.debug(
            "%s did not ask for authentication, falling back to /v2/token",
            self.registry,
        )
        return f"{self.registry_url}/v2/token", None

    async def authenticate(
        self,
        auth: Authorization,
        scope: ClientScope,
        probe_reference: str | None = None,
    ):
        """Exchange `auth` for a bearer token and bind it to the session"""
        realm, service = await self.probe_token_endpoint(probe_reference)
        params = {"scope": f"repository:{self.repo}:{ClientScope(scope).value}"}
        if service is not None:
            params["service"] = service
        response = await self.session.get(realm, params=params, auth=_basic_auth(auth))
        if service is None and response.status_code == 404:
            # Registries without access control have no token endpoint either
            logger.debug("%s has no token endpoint, continuing without a token", self)
            return
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as e:
            raise AuthenticationError(f"Token response from {realm} is not JSON") from e
        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not isinstance(token, str):
            raise AuthenticationError(f"No token in response from {realm}")
        logger.debug("Obtained %s token for %s", ClientScope(scope).value, self)
        self.session.auth = BearerAuth(token)

    async def get_index_or_manifest(self, tag: str) -> Index:
        logger.info("Fetching index for %s:%s", self, tag)
        response = await self.session.get(
            f"{self.repo_url}/manifests/{tag}",
            headers={
                "Accept": f"{DOCKER_MANIFEST_LIST_MEDIA_TYPE}, {INDEX_MEDIA_TYPE}"
            },
        )
        response.raise_for_status()
        return Index.model_validate_json(response.content)

    async def get_manifest(self, digest: str) -> Manifest:
        logger.info("Fetching manifest for %s@%s", self, digest)
        response = await self.session.get(
            f"{self.repo_url}/manifests/{digest}",
            headers={"Accept": MANIFEST_MEDIA_TYPE},
        )
        response.raise_for_status()
        return Manifest.model_validate_json(response.content)

    async def get_config(self, digest: str) -> ImageConfiguration:
        logger.info("Fetching config for %s@%s", self, digest)
        response = await self.session.get(
            f"{self.repo_url}/blobs/{digest}",
            headers={"Accept": CONFIG_MEDIA_TYPE},
        )
        response.raise_for_status()
        return ImageConfiguration.model_validate_json(response.content)

    async def get_tag_for_target(
        self, tag: str, architecture: str, os: str
    ) -> tuple[Manifest, ImageConfiguration]:
        """Pull the manifest and configuration of `tag` for one platform"""
        index = await self.get_index_or_manifest(tag)
        descriptor = index.find_platform(architecture, os)
        if descriptor is None:
            raise NotFoundError(
                f"Could not find a manifest for {architecture}/{os} in {self}:{tag}"
            )
        manifest = await self.get_manifest(descriptor.digest)
        config = await self.get_config(manifest.config.digest)
        return manifest, config

    async def has_blob(self, digest: str) -> bool:
        response = await self.session.head(f"{self.repo_url}/blobs/{digest}")
        return response.status_code == 200

    async def get_binary_blob(self, digest: str) -> bytes:
        logger.info("Downloading blob %s from %s", digest, self)
        response = await self.session.get(f"{self.repo_url}/blobs/{digest}")
        response.raise_for_status()
        return response.content

    async def upload_blob(self, digest: str, contents: bytes):
        """Push a blob using a single POST then PUT

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#post-then-put
        """
        logger.info("Uploading blob %s to %s", digest, self)
        response = await self.session.post(f"{self.repo_url}/blobs/uploads/")
        response.raise_for_status()
        location = response.headers.get("Location")
        if location is None:
            raise RegistryError(f"No Location header in upload response from {self}")
        # Location may be relative to the registry or absolute
        upload_url = response.url.join(location)

        response = await self.session.put(
            upload_url,
            content=contents,
            headers={"Content-Type": "application/octet-stream"},
            params={"digest": digest},
        )
        response.raise_for_status()

    async def upload_manifest(self, manifest: Manifest, tag: str) -> str:
        """Push `manifest` as `tag`, return the digest the registry assigned

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-manifests
        """
        logger.info("Uploading manifest for %s:%s", self, tag)
        descriptor = manifest.descriptor
        response = await self.session.put(
            f"{self.repo_url}/manifests/{tag}",
            content=manifest.to_json(),
            headers={"Content-Type": descriptor.mediaType},
        )
        response.raise_for_status()
        header = response.headers.get("Docker-Content-Digest")
        if header is None:
            raise RegistryError(
                f"Missing Docker-Content-Digest header in response from {self}"
            )
        digest = parse_digest(header)
        if digest != descriptor.digest:
            logger.debug("Registry re-serialized the manifest of %s:%s", self, tag)
        return digest
