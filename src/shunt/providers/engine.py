"""Async adapter over the Docker engine API."""

import asyncio
import logging
from typing import Any, Awaitable, Dict, IO, List, Optional, Union

import docker
from docker.errors import APIError, NotFound

from shunt.models.config import DockerConfig


logger = logging.getLogger(__name__)

# Engine statuses meaning a removal already happened (or is happening)
ALREADY_REMOVED_STATUSES = (304, 404, 409)


def is_already_removed(error: APIError) -> bool:
    """Whether a remove() failure means the container is gone anyway."""
    return isinstance(error, NotFound) or error.status_code in ALREADY_REMOVED_STATUSES


def is_not_connected(error: APIError) -> bool:
    """Whether a disconnect() failure means the container wasn't attached."""
    if isinstance(error, NotFound):
        return True
    return "is not connected" in str(error.explanation or error)


async def gather_settled(*aws: Awaitable[Any]) -> List[Any]:
    """Run ``aws`` concurrently, waiting for every one before raising.

    Engine calls run in worker threads and can't be cancelled, so the
    first failure is only re-raised once all of them have finished.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _endpoint_kwargs(endpoint_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Translate an inspected endpoint config into docker SDK connect kwargs."""
    if not endpoint_config:
        return {}

    kwargs: Dict[str, Any] = {}
    ipam = endpoint_config.get("IPAMConfig") or {}
    if ipam.get("IPv4Address"):
        kwargs["ipv4_address"] = ipam["IPv4Address"]
    if ipam.get("IPv6Address"):
        kwargs["ipv6_address"] = ipam["IPv6Address"]
    if ipam.get("LinkLocalIPs"):
        kwargs["link_local_ips"] = ipam["LinkLocalIPs"]
    if endpoint_config.get("Aliases"):
        kwargs["aliases"] = endpoint_config["Aliases"]
    if endpoint_config.get("Links"):
        # Inspect reports "name:alias" strings, the SDK wants pairs
        kwargs["links"] = [tuple(link.split(":", 1)) if ":" in link else (link, None)
                           for link in endpoint_config["Links"]]
    if endpoint_config.get("DriverOpts"):
        kwargs["driver_opt"] = endpoint_config["DriverOpts"]
    return kwargs


class DockerEngine:
    """Docker engine client with async-friendly interfaces.

    Every call runs the blocking docker SDK request in a worker thread.
    Engine failures are raised as ``docker.errors`` exceptions.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None, config: Optional[DockerConfig] = None):
        """Initialize the engine adapter.

        Args:
            client: Existing docker SDK client. Created from ``config`` (or
                the environment) when omitted.
            config: Connection settings used to build a client.
        """
        if client is None:
            config = config or DockerConfig()
            if config.base_url:
                client = docker.DockerClient(base_url=config.base_url, timeout=config.timeout)
            else:
                client = docker.from_env(timeout=config.timeout)
        self.client = client
        self.api = client.api

    async def ping(self) -> bool:
        """Check the engine is reachable."""
        try:
            return bool(await asyncio.to_thread(self.api.ping))
        except Exception as e:
            logger.debug(f"Docker engine not reachable: {e}")
            return False

    async def version(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.version)

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Inspect a container, raising NotFound if it doesn't exist."""
        return await asyncio.to_thread(self.api.inspect_container, container_id)

    async def find_container(self, container_id: str) -> Optional[Dict[str, Any]]:
        """Inspect a container, returning None if it doesn't exist."""
        try:
            return await self.inspect_container(container_id)
        except NotFound:
            return None

    async def create_container(self, config: Dict[str, Any], name: Optional[str] = None) -> str:
        """Create a container from a raw engine config and return its ID."""
        result = await asyncio.to_thread(self.api.create_container_from_config, config, name)
        for warning in result.get("Warnings") or []:
            logger.warning(f"Engine warning creating {name or 'container'}: {warning}")
        return result["Id"]

    async def start_container(self, container_id: str) -> None:
        await asyncio.to_thread(self.api.start, container_id)

    async def stop_container(self, container_id: str, timeout: int) -> None:
        await asyncio.to_thread(self.api.stop, container_id, timeout=timeout)

    async def kill_container(self, container_id: str) -> None:
        await asyncio.to_thread(self.api.kill, container_id)

    async def remove_container(self, container_id: str) -> None:
        await asyncio.to_thread(self.api.remove_container, container_id)

    async def connect_network(
        self,
        network_id: str,
        container_id: str,
        endpoint_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Attach a container to a network, optionally with its old endpoint settings."""
        await asyncio.to_thread(
            self.api.connect_container_to_network,
            container_id,
            network_id,
            **_endpoint_kwargs(endpoint_config),
        )

    async def disconnect_network(self, network_id: str, container_id: str) -> None:
        await asyncio.to_thread(self.api.disconnect_container_from_network, container_id, network_id)

    async def list_networks(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.api.networks, filters=filters)

    async def list_containers(
        self,
        filters: Optional[Dict[str, Any]] = None,
        all: bool = False,
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.api.containers, all=all, filters=filters)

    async def image_exists(self, image: str) -> bool:
        """Check whether an image is available locally.

        Any inspect failure counts as missing; a following pull reports the
        real problem if the engine is unusable.
        """
        try:
            await asyncio.to_thread(self.client.images.get, image)
            return True
        except APIError as e:
            logger.debug(f"Image {image} not available locally: {e}")
            return False

    async def pull_image(self, image: str) -> None:
        logger.info(f"Pulling image {image}")
        await asyncio.to_thread(self.client.images.pull, image)
        logger.debug(f"Pulled image {image}")

    async def put_archive(self, container_id: str, path: str, data: Union[bytes, IO[bytes]]) -> None:
        """Extract a tar archive into a container's filesystem."""
        ok = await asyncio.to_thread(self.api.put_archive, container_id, path, data)
        if not ok:
            raise APIError(f"Failed to copy files into container {container_id}")
