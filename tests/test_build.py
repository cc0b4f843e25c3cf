import gzip
import io
import tarfile

import pytest

from conftest import REGISTRY, digest_of
from ocibake.oci import build_image
from ocibake.oci.client import ClientScope, NotFoundError, RegistryClient
from ocibake.oci.layer import LayerBuildError
from ocibake.recipe import Recipe

pytestmark = pytest.mark.anyio


def _recipe(app_dir, **base) -> Recipe:
    return Recipe.model_validate(
        {
            "base": {"registry": REGISTRY, "repo": "library/base", "tag": "latest"}
            | base,
            "target": {
                "registry": REGISTRY,
                "repo": "test/app",
                "tags": ["latest", "1.0.0"],
                "auth": ["user", "password"],
            },
            "modification": {
                "app_layer_folder": str(app_dir),
                "execution_config": {"Cmd": ["cat", "/hello.txt"], "Env": ["A=1"]},
            },
        }
    )


async def test_build_image(registry, transport, app_dir):
    registry.seed_base_image(repo="library/base")

    digest = await build_image(_recipe(app_dir), transport=transport)

    # Pull the pushed image back like any other client would
    async with await RegistryClient.connect(
        REGISTRY, "test/app", scope=ClientScope.PULL, transport=transport
    ) as client:
        manifest = await client.get_manifest("1.0.0")
        config = await client.get_config(manifest.config.digest)
        layer = await client.get_binary_blob(manifest.layers[-1].digest)

    assert manifest.config.digest == digest
    assert len(manifest.layers) == 2
    assert config.rootfs.diff_ids[-1] == digest_of(gzip.decompress(layer))
    assert config.config.Cmd == ["cat", "/hello.txt"]
    assert config.config.Env == ["PATH=/usr/bin", "A=1"]
    assert [h.empty_layer for h in config.history] == [None, None, True]
    with tarfile.open(fileobj=io.BytesIO(gzip.decompress(layer))) as tar:
        assert tar.extractfile("hello.txt").read() == b"hello world\n"

    tokens = [r for r in registry.requests if r.url.host == "auth.test"]
    assert {r.url.params["scope"] for r in tokens} == {
        "repository:library/base:pull",
        "repository:test/app:push",
        "repository:test/app:pull",
    }
    assert registry.manifests[("test/app", "latest")] == registry.manifests[("test/app", "1.0.0")]


async def test_build_image_missing_platform(registry, transport, app_dir):
    registry.seed_base_image(repo="library/base")
    with pytest.raises(NotFoundError):
        await build_image(_recipe(app_dir, architecture="s390x"), transport=transport)
    assert not registry.calls("PUT")


async def test_build_image_missing_directory(registry, transport, tmp_path):
    registry.seed_base_image(repo="library/base")
    with pytest.raises(LayerBuildError):
        await build_image(_recipe(tmp_path / "missing"), transport=transport)
    assert not registry.calls("POST")
