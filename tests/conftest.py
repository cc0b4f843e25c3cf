import gzip
import json
import re
import uuid
from hashlib import sha256
from pathlib import Path

import httpx
import pytest

REGISTRY = "registry.test"
TOKEN_URL = "https://auth.test/token"
TOKEN = "test-token"

BLOB_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/(?P<digest>sha256:[a-f0-9]{64})$")
UPLOADS_RE = re.compile(r"^/v2/(?P<repo>.+)/blobs/uploads/(?P<session>[^/]*)$")
MANIFEST_RE = re.compile(r"^/v2/(?P<repo>.+)/manifests/(?P<reference>[^/]+)$")


def digest_of(data: bytes) -> str:
    return f"sha256:{sha256(data).hexdigest()}"


class FakeRegistry:
    """In-memory OCI registry speaking just enough of the distribution API"""

    def __init__(self, require_auth: bool = True):
        self.require_auth = require_auth
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.requests: list[httpx.Request] = []
        self.failing_blobs: set[str] = set()

    def calls(self, method: str, path_prefix: str = "") -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "auth.test" or path == "/v2/token":
            return httpx.Response(200, json={"token": TOKEN})
        if self.require_auth and request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": f'Bearer realm="{TOKEN_URL}",service="{REGISTRY}"'
                },
            )
        if path == "/v2/":
            return httpx.Response(200, json={})
        if match := UPLOADS_RE.match(path):
            return self._upload(request, match["repo"], match["session"])
        if match := BLOB_RE.match(path):
            return self._blob(request, match["repo"], match["digest"])
        if match := MANIFEST_RE.match(path):
            return self._manifest(request, match["repo"], match["reference"])
        return httpx.Response(404)

    def _upload(self, request, repo, session):
        if request.method == "POST":
            return httpx.Response(
                202,
                headers={
                    "Location": f"/v2/{repo}/blobs/uploads/{uuid.uuid4()}?_state=abc"
                },
            )
        digest = request.url.params["digest"]
        if request.url.params.get("_state") != "abc":
            return httpx.Response(400)
        if digest in self.failing_blobs:
            return httpx.Response(500)
        if digest_of(request.content) != digest:
            return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})
        self.blobs[(repo, digest)] = request.content
        return httpx.Response(201, headers={"Docker-Content-Digest": digest})

    def _blob(self, request, repo, digest):
        if (repo, digest) not in self.blobs:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, content=self.blobs[(repo, digest)])

    def _manifest(self, request, repo, reference):
        if request.method == "PUT":
            digest = digest_of(request.content)
            media_type = request.headers["Content-Type"]
            self.manifests[(repo, reference)] = (media_type, request.content)
            self.manifests[(repo, digest)] = (media_type, request.content)
            return httpx.Response(201, headers={"Docker-Content-Digest": digest})
        if (repo, reference) not in self.manifests:
            return httpx.Response(404)
        media_type, content = self.manifests[(repo, reference)]
        return httpx.Response(
            200, content=content, headers={"Content-Type": media_type}
        )

    def put_blob(self, repo: str, data: bytes) -> str:
        digest = digest_of(data)
        self.blobs[(repo, digest)] = data
        return digest

    def put_manifest(self, repo: str, reference: str, media_type: str, document: dict) -> dict:
        content = json.dumps(document).encode()
        self.manifests[(repo, reference)] = (media_type, content)
        self.manifests[(repo, digest_of(content))] = (media_type, content)
        return {"mediaType": media_type, "digest": digest_of(content), "size": len(content)}

    def seed_base_image(self, repo: str = "library/base", tag: str = "latest") -> dict:
        """Store a docker-style amd64 image with one layer, behind an index"""
        layer = gzip.compress(b"base layer contents", mtime=0)
        layer_digest = self.put_blob(repo, layer)
        config = {
            "architecture": "amd64",
            "os": "linux",
            "created": "2024-01-01T00:00:00Z",
            "config": {
                "Env": ["PATH=/usr/bin"],
                "Cmd": ["sh"],
                "Labels": {"maintainer": "base"},
            },
            "rootfs": {"type": "layers", "diff_ids": [digest_of(b"base layer contents")]},
            "history": [{"created_by": "ADD rootfs.tar /"}],
        }
        config_data = json.dumps(config).encode()
        config_digest = self.put_blob(repo, config_data)
        manifest = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {
                "mediaType": "application/vnd.docker.container.image.v1+json",
                "size": len(config_data),
                "digest": config_digest,
            },
            "layers": [
                {
                    "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                    "size": len(layer),
                    "digest": layer_digest,
                }
            ],
        }
        amd64 = self.put_manifest(
            repo, "amd64", "application/vnd.docker.distribution.manifest.v2+json", manifest
        )
        arm64 = self.put_manifest(
            repo,
            "arm64",
            "application/vnd.docker.distribution.manifest.v2+json",
            manifest | {"annotations": {"arch": "arm64"}},
        )
        self.put_manifest(
            repo,
            tag,
            "application/vnd.docker.distribution.manifest.list.v2+json",
            {
                "schemaVersion": 2,
                "mediaType": "application/vnd.docker.distribution.manifest.list.v2+json",
                "manifests": [
                    arm64 | {"platform": {"architecture": "arm64", "os": "linux"}},
                    amd64 | {"platform": {"architecture": "amd64", "os": "linux"}},
                ],
            },
        )
        return {"layer": layer_digest, "config": config_digest}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def transport(registry) -> httpx.MockTransport:
    return httpx.MockTransport(registry.handler)


@pytest.fixture
def app_dir(tmp_path) -> Path:
    """A directory holding a single file"""
    app = tmp_path / "app"
    app.mkdir()
    (app / "hello.txt").write_text("hello world\n")
    return app
