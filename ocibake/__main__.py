import asyncio
import logging.config
from pathlib import Path

import click
import httpx
from pydantic import ValidationError

from ocibake.oci import build_image
from ocibake.oci.client import RegistryError
from ocibake.oci.descriptor import DigestError
from ocibake.oci.layer import LayerBuildError
from ocibake.recipe import RecipeError, load_recipe


def logging_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(levelname)-8s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "ocibake": {"handlers": ["default"], "level": level, "propagate": False},
            "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
    }


@click.group()
@click.option(
    "--log-level",
    help="Log level",
    envvar="OCIBAKE_LOG",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
def cli(log_level: str, debug: bool):
    logging.config.dictConfig(logging_config("DEBUG" if debug else log_level.upper()))


@cli.command()
@click.argument(
    "recipe",
    default="recipe.toml",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--digest-file",
    help="Write the digest of the pushed image to this file",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
)
def build(recipe: Path, digest_file: Path | None):
    """Build an image from RECIPE and push it to the target registry."""
    try:
        digest = asyncio.run(build_image(load_recipe(recipe)))
    except (RecipeError, RegistryError, LayerBuildError, DigestError) as e:
        raise click.ClickException(str(e)) from e
    except ValidationError as e:
        raise click.ClickException(f"Unexpected registry response: {e}") from e
    except httpx.HTTPStatusError as e:
        raise click.ClickException(
            f"{e.request.method} {e.request.url} failed: {e.response.status_code}"
        ) from e
    except httpx.HTTPError as e:
        raise click.ClickException(f"Registry request failed: {e}") from e

    if digest_file is not None:
        digest_file.write_text(digest, encoding="utf-8")
    click.echo(digest)


if __name__ == "__main__":
    cli()
