"""Docker image export and restore through the Docker SDK."""

import json
import logging
import re
from pathlib import Path

import docker
from docker.errors import APIError, DockerException, ImageNotFound

from hostkeep.utils.errors import CollaboratorError

from .base import ContainerImages, PathLike

logger = logging.getLogger(__name__)

CONTAINER_LIST = "container_names.txt"


def _safe_name(tag: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", tag)


class DockerImages(ContainerImages):
    """Saves tagged images as tarballs and container definitions as inspect JSON."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
        except DockerException as e:
            logger.debug("Docker daemon unavailable: %s", e)
            return False
        return True

    def export(self, dest_dir: PathLike) -> None:
        dest_dir = Path(dest_dir)
        images_dir = dest_dir / "images"
        images_dir.mkdir(parents=True, exist_ok=True)

        try:
            for image in self.client.images.list():
                if not image.tags:
                    continue
                tag = image.tags[0]
                target = images_dir / f"{_safe_name(tag)}.tar"
                logger.info("Saving image %s", tag)
                with open(target, "wb") as f:
                    for chunk in image.save(named=True):
                        f.write(chunk)

            names = []
            for container in self.client.containers.list(all=True):
                names.append(container.name)
                with open(dest_dir / f"{container.name}-inspect.json", "w", encoding="utf-8") as f:
                    json.dump(container.attrs, f, indent=2)

            with open(dest_dir / CONTAINER_LIST, "w", encoding="utf-8") as f:
                f.write("".join(f"{name}\n" for name in names))
        except (APIError, DockerException, OSError) as e:
            raise CollaboratorError(f"Docker export failed: {e}") from e

    def restore(self, src_dir: PathLike) -> None:
        src_dir = Path(src_dir)

        try:
            for archive in sorted((src_dir / "images").glob("*.tar")):
                logger.info("Loading image %s", archive.name)
                with open(archive, "rb") as f:
                    self.client.images.load(f)

            names_file = src_dir / CONTAINER_LIST
            if not names_file.exists():
                return

            existing = {container.name for container in self.client.containers.list(all=True)}
            for name in names_file.read_text(encoding="utf-8").split():
                inspect_file = src_dir / f"{name}-inspect.json"
                if name in existing or not inspect_file.exists():
                    continue
                with open(inspect_file, encoding="utf-8") as f:
                    attrs = json.load(f)
                image = attrs.get("Config", {}).get("Image")
                if not image:
                    continue
                logger.info("Recreating container %s from %s", name, image)
                try:
                    self.client.containers.create(image, name=name)
                except ImageNotFound:
                    logger.warning("Image %s for container %s is missing, skipping", image, name)
        except (APIError, DockerException, OSError) as e:
            raise CollaboratorError(f"Docker restore failed: {e}") from e
