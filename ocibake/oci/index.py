from pydantic import BaseModel, ConfigDict

from ocibake.oci.descriptor import Descriptor

INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)


class Index(BaseModel):
    """Image index or Docker manifest list

    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(extra="allow")

    manifests: list[Descriptor] = []
    schemaVersion: int = 2
    mediaType: str | None = INDEX_MEDIA_TYPE

    def find_platform(self, architecture: str, os: str) -> Descriptor | None:
        """Return the first manifest built for `architecture`/`os`"""
        for descriptor in self.manifests:
            if descriptor.platform is not None and descriptor.platform.matches(
                architecture, os
            ):
                return descriptor
        return None
