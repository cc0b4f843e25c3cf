import asyncio
import logging

from ocibake.oci.client import RegistryClient
from ocibake.oci.config import ExecConfig, History, ImageConfiguration
from ocibake.oci.descriptor import Descriptor
from ocibake.oci.layer import AppLayer
from ocibake.oci.manifest import (
    DOCKER_LAYER_GZIP_MEDIA_TYPE,
    LAYER_GZIP_MEDIA_TYPE,
    MANIFEST_MEDIA_TYPE,
    Manifest,
)

logger = logging.getLogger(__name__)


async def ensure_base_layer(source: RegistryClient, target: RegistryClient, digest: str):
    """Copy a blob from `source` to `target` unless `target` already has it"""
    if await target.has_blob(digest):
        logger.info("Base layer %s is already known at %s", digest, target)
        return
    logger.info("Base layer %s is not known at %s, copying from %s", digest, target, source)
    contents = await source.get_binary_blob(digest)
    await target.upload_blob(digest, contents)


class PreparationState:
    """An image being assembled on top of a base image.

    Mutate it with `apply_layer()` and `patch_execution_config()`, then
    publish it once with `push_to()`. A pushed state can not be reused.
    """

    def __init__(
        self,
        manifest: Manifest,
        configuration: ImageConfiguration,
        base_provider: RegistryClient,
    ):
        # The base layers are copied as they are, whatever the working manifest becomes
        self.base_layers: list[Descriptor] = [
            layer.model_copy() for layer in manifest.layers
        ]
        self.manifest = manifest.model_copy(deep=True)
        self.manifest.mediaType = MANIFEST_MEDIA_TYPE
        for layer in self.manifest.layers:
            if layer.mediaType == DOCKER_LAYER_GZIP_MEDIA_TYPE:
                layer.mediaType = LAYER_GZIP_MEDIA_TYPE
        self.configuration = configuration.model_copy(deep=True)
        self.own_layers: list[AppLayer] = []
        self.base_provider = base_provider
        self._pushed = False

    def __copy__(self):
        raise TypeError(f"{self.__class__.__name__} can not be copied")

    def __deepcopy__(self, memo):
        raise TypeError(f"{self.__class__.__name__} can not be copied")

    def _check_usable(self):
        if self._pushed:
            raise RuntimeError("Image has already been pushed")

    def apply_layer(self, layer: AppLayer):
        """Add `layer` on top of the image"""
        self._check_usable()
        self.configuration.rootfs.diff_ids.append(layer.diff_id)
        self.configuration.history.append(History(created_by=layer.created_by))
        self.manifest.layers.append(layer.descriptor)
        self.own_layers.append(layer)

    def patch_execution_config(self, patch: ExecConfig):
        """Merge `patch` into the execution config of the image

        Scalar settings are replaced. List settings are extended with the patch
        entries after the existing ones, without removing duplicates. Labels
        are only added for keys the image does not carry yet.
        """
        self._check_usable()
        exec_config = (
            self.configuration.config.model_copy(deep=True)
            if self.configuration.config is not None
            else ExecConfig()
        )
        if patch.User is not None:
            logger.info("Setting user to %s", patch.User)
            exec_config.User = patch.User
        if patch.WorkingDir is not None:
            logger.info("Setting working dir to %s", patch.WorkingDir)
            exec_config.WorkingDir = patch.WorkingDir
        if patch.Cmd is not None:
            logger.info("Setting cmd to %s", patch.Cmd)
            exec_config.Cmd = list(patch.Cmd)
        if patch.StopSignal is not None:
            logger.info("Setting stop signal to %s", patch.StopSignal)
            exec_config.StopSignal = patch.StopSignal
        if patch.ExposedPorts is not None:
            logger.info("Adding exposed ports %s", patch.ExposedPorts)
            exec_config.ExposedPorts = (exec_config.ExposedPorts or []) + patch.ExposedPorts
        if patch.Volumes is not None:
            logger.info("Adding volumes %s", patch.Volumes)
            exec_config.Volumes = (exec_config.Volumes or []) + patch.Volumes
        if patch.Env is not None:
            logger.info("Adding environment variables %s", patch.Env)
            exec_config.Env = (exec_config.Env or []) + patch.Env
        if patch.Labels is not None:
            logger.info("Adding labels %s", patch.Labels)
            labels = dict(exec_config.Labels or {})
            for key, value in patch.Labels.items():
                labels.setdefault(key, value)
            exec_config.Labels = labels

        self.configuration.history.append(
            History(
                created_by="ocibake CONFIG "
                + exec_config.model_dump_json(exclude_none=True),
                empty_layer=True,
            )
        )
        self.configuration.config = exec_config

    async def push_to(self, target: RegistryClient, tags: list[str]) -> str:
        """Publish the image to `target` under every tag in `tags`

        All blobs are uploaded concurrently, the manifest is only pushed once
        every one of them succeeded. The first failed upload fails the push,
        but only after the other uploads have finished. Returns the digest of
        the image config.
        """
        self._check_usable()
        self._pushed = True
        logger.info("Pushing image to %s:%s", target, tags)

        uploads = [
            ensure_base_layer(self.base_provider, target, layer.digest)
            for layer in self.base_layers
        ]
        own_layers, self.own_layers = self.own_layers, []
        for layer in own_layers:
            uploads.append(target.upload_blob(layer.descriptor.digest, layer.contents))
        config_data, config_descriptor = self.configuration.to_blob()
        uploads.append(target.upload_blob(config_descriptor.digest, config_data))

        tasks = [asyncio.create_task(upload) for upload in uploads]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failed = [task for task in tasks if task in done and task.exception() is not None]
        if failed:
            if pending:
                logger.info("Waiting for %d running uploads to finish", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            for task in tasks:
                if task is not failed[0] and task.exception() is not None:
                    logger.debug("Upload to %s also failed: %r", target, task.exception())
            raise failed[0].exception()

        self.manifest.config = config_descriptor
        digests = await asyncio.gather(
            *(target.upload_manifest(self.manifest, tag) for tag in tags)
        )
        for tag, digest in zip(tags, digests):
            logger.info("Pushed %s:%s as %s", target, tag, digest)
        return config_descriptor.digest
