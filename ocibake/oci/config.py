from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from ocibake.oci.descriptor import Descriptor

CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"


class ExecConfig(BaseModel):
    """Execution parameters of a container

    ref: https://github.com/opencontainers/image-spec/blob/main/config.md#properties

    `ExposedPorts` and `Volumes` are JSON objects with empty values on the wire,
    they are kept here as ordered lists of their keys.
    """

    model_config = ConfigDict(extra="allow")

    User: str | None = None
    ExposedPorts: list[str] | None = None
    Env: list[str] | None = None
    Entrypoint: list[str] | None = None
    Cmd: list[str] | None = None
    Volumes: list[str] | None = None
    WorkingDir: str | None = None
    Labels: dict[str, str] | None = None
    StopSignal: str | None = None
    ArgsEscaped: bool | None = None

    @field_validator("ExposedPorts", "Volumes", mode="before")
    @classmethod
    def _keys_of_set(cls, value):
        if isinstance(value, dict):
            return list(value)
        return value

    @field_serializer("ExposedPorts", "Volumes")
    def _as_set(self, value: list[str] | None):
        if value is None:
            return None
        return {key: {} for key in value}


class RootFS(BaseModel):
    type: str = "layers"
    diff_ids: list[str] = []


class History(BaseModel):
    model_config = ConfigDict(extra="allow")

    created: str | None = None
    created_by: str | None = None
    author: str | None = None
    comment: str | None = None
    empty_layer: bool | None = None


class ImageConfiguration(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/config.md
    """

    model_config = ConfigDict(extra="allow")

    architecture: str
    os: str
    config: ExecConfig | None = None
    rootfs: RootFS = RootFS()
    history: list[History] = []

    @field_validator("history", mode="before")
    @classmethod
    def _null_history(cls, value):
        return [] if value is None else value

    def to_blob(self) -> tuple[bytes, Descriptor]:
        """Serialize the configuration and describe the resulting blob"""
        data = self.model_dump_json(exclude_none=True).encode("utf-8")
        descriptor = Descriptor.from_bytes(CONFIG_MEDIA_TYPE, data)
        return data, descriptor
