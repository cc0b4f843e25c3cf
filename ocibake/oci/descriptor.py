import re
from hashlib import sha256

from pydantic import BaseModel, ConfigDict

DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")


class DigestError(ValueError):
    """Raised when a string is not a canonical sha256 digest."""


def sha256_digest(data: bytes) -> str:
    """Return the canonical digest of `data`"""
    return f"sha256:{sha256(data).hexdigest()}"


def parse_digest(value: str) -> str:
    """Validate a digest received from a registry"""
    value = value.strip()
    if not DIGEST_RE.fullmatch(value):
        raise DigestError(f"Invalid digest: {value!r}")
    return value


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(extra="allow")

    architecture: str
    os: str
    variant: str | None = None

    def matches(self, architecture: str, os: str) -> bool:
        return self.architecture == architecture and self.os == os


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    model_config = ConfigDict(extra="allow")

    mediaType: str
    size: int
    digest: str
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
    platform: Platform | None = None

    @classmethod
    def from_bytes(cls, media_type: str, data: bytes) -> "Descriptor":
        return cls(
            mediaType=media_type,
            size=len(data),
            digest=sha256_digest(data),
        )
