from pydantic import BaseModel, ConfigDict

from ocibake.oci.descriptor import Descriptor

MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
LAYER_GZIP_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_LAYER_GZIP_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    model_config = ConfigDict(extra="allow")

    config: Descriptor
    layers: list[Descriptor] = []
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    mediaType: str | None = MANIFEST_MEDIA_TYPE
    schemaVersion: int = 2

    def to_json(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")

    @property
    def descriptor(self) -> Descriptor:
        return Descriptor.from_bytes(self.mediaType or MANIFEST_MEDIA_TYPE, self.to_json())
