"""Container image assembly on top of the OCI distribution API

This module builds an application layer from a directory, stacks it on a
base image and publishes the result to a registry.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING

import httpx

from ocibake.oci.client import ClientScope, RegistryClient
from ocibake.oci.config import ImageConfiguration
from ocibake.oci.image import PreparationState
from ocibake.oci.layer import AppLayer
from ocibake.oci.manifest import Manifest

if TYPE_CHECKING:
    from ocibake.recipe import Recipe

logger = logging.getLogger(__name__)


async def build_image(
    recipe: Recipe, transport: httpx.AsyncBaseTransport | None = None
) -> str:
    """Build the image described by `recipe` and push it

    Pulling the base image, building the app layer and authenticating at the
    target run concurrently. Returns the digest of the pushed image config.
    """
    base = recipe.base
    target = recipe.target
    async with AsyncExitStack() as stack:

        async def pull_base() -> tuple[RegistryClient, Manifest, ImageConfiguration]:
            client = await RegistryClient.connect(
                base.registry,
                base.repo,
                auth=base.authorization,
                scope=ClientScope.PULL,
                scheme=base.scheme,
                transport=transport,
            )
            stack.push_async_callback(client.aclose)
            manifest, config = await client.get_tag_for_target(
                base.tag, base.architecture, base.os
            )
            return client, manifest, config

        async def connect_target() -> RegistryClient:
            client = await RegistryClient.connect(
                target.registry,
                target.repo,
                auth=target.authorization,
                scope=ClientScope.PUSH,
                scheme=target.scheme,
                transport=transport,
            )
            stack.push_async_callback(client.aclose)
            return client

        results = await asyncio.gather(
            pull_base(),
            AppLayer.build_from_directory(recipe.modification.app_layer_folder),
            connect_target(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        (base_client, manifest, config), app_layer, target_client = results

        image = PreparationState(manifest, config, base_client)
        image.apply_layer(app_layer)
        if recipe.modification.execution_config is not None:
            image.patch_execution_config(recipe.modification.execution_config)
        logger.debug("Prepared manifest: %s", image.manifest)

        digest = await image.push_to(target_client, target.tags)
        logger.info(
            "Successfully pushed image to %s:%s (%s)", target_client, target.tags, digest
        )
        return digest
