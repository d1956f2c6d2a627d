"""
system_snapshot.py - Container image snapshots

Only meaningful when the agent itself runs inside a docker container that can
reach a docker daemon (socket mounted in):

    /.dockerenv exists?  --no-->  None
          |
    hostname = container id
          |
    docker ps ok?        --no-->  None
          |
    docker commit <container> rewind-ckpt-<agent>-<ts>  ->  image id

Every failure is a logged warning. Snapshots are optional; files and
conversation are still checkpointed without one.
"""

import logging
import os
import socket
import subprocess
from datetime import datetime

logger = logging.getLogger(__name__)

DOCKERENV = "/.dockerenv"
IMAGE_PREFIX = "rewind-ckpt"


def is_running_in_docker() -> bool:
    return os.path.exists(DOCKERENV)


def current_container_id() -> str | None:
    # Default `docker run` sets the hostname to the short container id
    try:
        return socket.gethostname() or None
    except OSError:
        return None


def docker_available() -> bool:
    try:
        r = subprocess.run(["docker", "ps"], capture_output=True, text=True)
    except OSError:
        return False
    return r.returncode == 0


def relaunch_hint(image_id: str) -> str:
    return f"docker run ... {image_id}"


class SystemSnapshotter:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @property
    def in_container(self) -> bool:
        return self.enabled and is_running_in_docker()

    def commit(self, agent_id: str) -> str | None:
        """Commit the current container as an image. None when unavailable or failed."""
        if not self.in_container:
            return None
        container = current_container_id()
        if not container or not docker_available():
            return None
        image = f"{IMAGE_PREFIX}-{agent_id}-{datetime.now().strftime('%Y%m%d%H%M%S')}".lower()
        try:
            r = subprocess.run(["docker", "commit", container, image], capture_output=True, text=True)
        except OSError as e:
            logger.warning("Failed to commit docker container: %s", e)
            return None
        if r.returncode != 0:
            logger.warning("Failed to commit docker container: %s", (r.stderr or r.stdout).strip())
            return None
        return r.stdout.strip() or image
