"""
Container Runtime Adapters

Platform-neutral interface to the container runtime plus thin adapters for
the docker and podman command lines.
"""

from .base import ContainerRuntime, ExecResult
from .docker_runtime import DockerRuntime, PodmanRuntime, get_runtime

__all__ = [
    'ContainerRuntime',
    'ExecResult',
    'DockerRuntime',
    'PodmanRuntime',
    'get_runtime'
]
