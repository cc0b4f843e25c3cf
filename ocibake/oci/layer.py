import asyncio
import gzip
import io
import logging
import os
import stat
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path

from ocibake.oci.descriptor import Descriptor, sha256_digest
from ocibake.oci.manifest import LAYER_GZIP_MEDIA_TYPE

logger = logging.getLogger(__name__)


class LayerBuildError(Exception):
    """Raised when a layer can not be built from a directory."""


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    # Only keep what identifies the file, ownership and times vary per checkout
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if info.isdir() or info.mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
        info.mode = 0o755
    else:
        info.mode = 0o644
    return info


def _add_tree(tar: tarfile.TarFile, root: Path, directory: Path):
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        path = Path(entry.path)
        info = tar.gettarinfo(path, arcname=path.relative_to(root).as_posix())
        if info is None:
            logger.warning("Skipping unsupported file type: %s", path)
            continue
        _normalize(info)
        if info.isreg():
            with path.open("rb") as f:
                tar.addfile(info, f)
        else:
            tar.addfile(info)
        # is_dir() with follow_symlinks=False so linked directories stay links
        if entry.is_dir(follow_symlinks=False):
            _add_tree(tar, root, path)


def tar_folder(path: Path) -> bytes:
    """Archive the contents of `path` into a reproducible tar

    Entries are relative to `path`, added in name order and carry no
    ownership or timestamps. Symbolic links are stored, not followed.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
        _add_tree(tar, path, path)
    return buffer.getvalue()


def gzip_bytes(data: bytes) -> bytes:
    # mtime=0 keeps the gzip header stable between builds
    return gzip.compress(data, compresslevel=1, mtime=0)


@dataclass(slots=True)
class AppLayer:
    """A freshly built layer, held in memory until it is pushed"""

    contents: bytes
    descriptor: Descriptor
    diff_id: str
    created_by: str

    @classmethod
    def from_directory(cls, folder: str | Path) -> "AppLayer":
        """Build a gzipped layer from the contents of `folder`"""
        folder = Path(folder)
        if not folder.is_dir():
            raise LayerBuildError(f"{folder} is not a directory")

        logger.info("Building app layer from %s", folder)
        try:
            plain = tar_folder(folder)
        except OSError as e:
            raise LayerBuildError(f"Failed to archive {folder}: {e}") from e
        diff_id = sha256_digest(plain)
        logger.info("App layer uncompressed size: %d bytes", len(plain))

        try:
            contents = gzip_bytes(plain)
        except (OSError, zlib.error) as e:
            raise LayerBuildError(f"Failed to compress {folder}: {e}") from e
        logger.info(
            "App layer compressed size: %d bytes (%.2f%%)",
            len(contents),
            len(contents) / max(len(plain), 1) * 100,
        )

        return cls(
            contents=contents,
            descriptor=Descriptor(
                mediaType=LAYER_GZIP_MEDIA_TYPE,
                size=len(contents),
                digest=sha256_digest(contents),
            ),
            diff_id=diff_id,
            created_by=f"ocibake COPY {folder.as_posix()}/* /",
        )

    @classmethod
    async def build_from_directory(cls, folder: str | Path) -> "AppLayer":
        """Build the layer in a worker thread, keeping the event loop free"""
        return await asyncio.to_thread(cls.from_directory, folder)
