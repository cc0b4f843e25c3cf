"""Recipe files describing what to build and where to push it

A recipe is a TOML file, string values may reference environment variables
as `$NAME` or `${NAME}`.
"""
import logging
import os
import re
import tomllib
from pathlib import Path
from typing import Annotated

from pydantic import (
    BaseModel,
    BeforeValidator,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from ocibake.oci.client import (
    Authorization,
    NoAuth,
    Scheme,
    TokenAuth,
    UserPassword,
)
from ocibake.oci.config import ExecConfig
from ocibake.oci.descriptor import parse_digest

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "docker.io"
TAG_RE = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9._-]{0,127}$")
_ENV_RE = re.compile(
    r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<plain>[A-Za-z_][A-Za-z0-9_]*))"
)


class RecipeError(Exception):
    """Raised when a recipe can not be loaded."""


def expand_env(value):
    """Replace `$NAME` and `${NAME}` with the value of the environment variable"""
    if not isinstance(value, str):
        return value

    def replace(match: re.Match) -> str:
        name = match["braced"] or match["plain"]
        if name not in os.environ:
            raise ValueError(f"environment variable {name} is not set")
        return os.environ[name]

    return _ENV_RE.sub(replace, value)


def _check_tag(value: str) -> str:
    if not TAG_RE.fullmatch(value):
        raise ValueError(f"invalid tag name: {value!r}")
    return value


ShellExpanded = Annotated[str, BeforeValidator(expand_env)]
SecretExpanded = Annotated[SecretStr, BeforeValidator(expand_env)]


def parse_reference(image: str) -> tuple[str, str, str]:
    """Split an image reference into (registry, repo, tag or digest)

    A digest pins the image, a tag next to it is ignored.

    >>> parse_reference("alpine:3.20")
    ('docker.io', 'library/alpine', '3.20')
    >>> parse_reference("ghcr.io/owner/app")
    ('ghcr.io', 'owner/app', 'latest')
    """
    name, at, digest = image.partition("@")
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, path = first, rest
    else:
        registry, path = DEFAULT_REGISTRY, name
    repo, tag = path, "latest"
    if ":" in path.rsplit("/", 1)[-1]:
        repo, tag = path.rsplit(":", 1)
    if registry == DEFAULT_REGISTRY and "/" not in repo:
        repo = f"library/{repo}"
    if not repo:
        raise ValueError(f"invalid image reference: {image!r}")
    if at:
        return registry, repo, parse_digest(digest)
    return registry, repo, _check_tag(tag)


class RegistryLocation(BaseModel):
    auth: tuple[ShellExpanded, SecretExpanded] | SecretExpanded | None = None
    scheme: Scheme = Scheme.HTTPS

    @property
    def authorization(self) -> Authorization:
        match self.auth:
            case (username, secret):
                return UserPassword(username, secret.get_secret_value())
            case SecretStr() as secret:
                return TokenAuth(secret.get_secret_value())
            case _:
                return NoAuth()


class BaseSource(RegistryLocation):
    """The image to build on top of"""

    image: ShellExpanded | None = None
    registry: ShellExpanded | None = None
    repo: ShellExpanded | None = None
    tag: ShellExpanded = "latest"
    architecture: str = "amd64"
    os: str = "linux"

    @model_validator(mode="after")
    def _resolve_image(self):
        if self.image is not None:
            self.registry, self.repo, self.tag = parse_reference(self.image)
        elif self.registry is None or self.repo is None:
            raise ValueError("either 'image' or both 'registry' and 'repo' are required")
        return self


class Target(RegistryLocation):
    """Where to push the image"""

    registry: ShellExpanded
    repo: ShellExpanded
    tags: list[ShellExpanded]

    @field_validator("tags")
    @classmethod
    def _non_empty_tags(cls, value: list[str]) -> list[str]:
        # Tags set from empty variables are skipped
        tags = [_check_tag(tag) for tag in value if tag]
        if not tags:
            raise ValueError("at least one tag is required")
        return tags


class ImageModification(BaseModel):
    app_layer_folder: ShellExpanded
    execution_config: ExecConfig | None = None


class Recipe(BaseModel):
    base: BaseSource
    target: Target
    modification: ImageModification


def load_recipe(path: Path) -> Recipe:
    """Read and validate the recipe at `path`"""
    try:
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise RecipeError(f"Failed to read recipe {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise RecipeError(f"Failed to parse recipe {path}: {e}") from e
    try:
        recipe = Recipe.model_validate(data)
    except ValidationError as e:
        raise RecipeError(f"Invalid recipe {path}:\n{e}") from e
    logger.debug("Loaded recipe %s", recipe)
    return recipe
