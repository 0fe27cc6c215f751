"""In-place replacement of running containers with intercepted clones."""

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from docker.errors import APIError

from shunt.models.config import InjectionConfig
from shunt.models.interception import InterceptionSpec, OverrideContext
from shunt.providers.engine import DockerEngine, gather_settled, is_already_removed
from shunt.utils.archive import pack_interception_files
from shunt.utils.env import env_to_list, env_to_mapping
from shunt.utils.overrides import EnvOverrideFunc, terminal_env_overrides


logger = logging.getLogger(__name__)


def build_container_config(
    snapshot: Dict[str, Any],
    spec: InterceptionSpec,
    overrides_dir: Union[str, Path],
    env_overrides: EnvOverrideFunc = terminal_env_overrides,
    injection: Optional[InjectionConfig] = None,
) -> Dict[str, Any]:
    """Derive the create() config for an intercepted clone of ``snapshot``.

    The snapshot itself is left untouched. Only the first network is
    included, since the engine accepts a single network at creation
    time; the rest must be connected afterwards.
    """
    injection = injection or InjectionConfig()
    config = copy.deepcopy(snapshot["Config"])
    host_config = copy.deepcopy(snapshot.get("HostConfig") or {})
    networks = (snapshot.get("NetworkSettings") or {}).get("Networks") or {}

    original_env = config.get("Env") or []
    extra_env = env_overrides(
        spec.proxy_port,
        injection.ca_path,
        env_to_mapping(original_env),
        OverrideContext(
            host_ip=injection.host_ip,
            override_path=injection.overrides_path,
            target_platform=injection.target_platform,
        ),
    )
    # Appended, so the engine's last-wins handling lets overrides take effect
    config["Env"] = list(original_env) + env_to_list(extra_env)

    if spec.mode == "mount":
        host_config["Binds"] = list(host_config.get("Binds") or []) + [
            # Both read-only: the container must not be able to modify these
            f"{spec.cert_path}:{injection.ca_path}:ro",
            f"{overrides_dir}:{injection.overrides_path}:ro",
        ]
    config["HostConfig"] = host_config

    network_names = list(networks)
    if len(network_names) > 1:
        endpoints = {network_names[0]: copy.deepcopy(networks[network_names[0]])}
    else:
        endpoints = copy.deepcopy(networks)
    config["NetworkingConfig"] = {"EndpointsConfig": endpoints}

    return config


class ContainerReplacer:
    """Recreates a running container with interception configured.

    Containers are intercepted by stopping them, cloning them with extra
    settings, and starting the clone. There is no rollback: once the
    original has been removed, a failure leaves it gone.
    """

    def __init__(
        self,
        engine: DockerEngine,
        overrides_dir: Union[str, Path],
        env_overrides: EnvOverrideFunc = terminal_env_overrides,
        config: Optional[InjectionConfig] = None,
    ):
        """Initialize the replacer."""
        self.engine = engine
        self.overrides_dir = Path(overrides_dir)
        self.env_overrides = env_overrides
        self.config = config or InjectionConfig()

    async def replace(self, container_id: str, spec: InterceptionSpec) -> str:
        """Replace ``container_id`` with an intercepted clone, returning the new ID."""
        snapshot = await self.engine.inspect_container(container_id)
        name = snapshot["Name"].lstrip("/")

        # Built before stopping, so bad input leaves the original untouched
        config = build_container_config(
            snapshot,
            spec,
            self.overrides_dir,
            env_overrides=self.env_overrides,
            injection=self.config,
        )

        logger.info(f"Stopping container {name} for interception")
        await self.engine.stop_container(container_id, timeout=self.config.stop_timeout)
        await self._remove(container_id, name)

        try:
            return await self._recreate(snapshot, config, name, spec)
        except Exception:
            logger.error(
                f"Container {name} was removed but could not be recreated "
                f"(image {snapshot['Config'].get('Image')})"
            )
            raise

    async def _remove(self, container_id: str, name: str) -> None:
        try:
            await self.engine.remove_container(container_id)
        except APIError as e:
            if not is_already_removed(e):
                raise
            # Usually means it ran with --rm, so it's been removed automatically
            logger.debug(f"Container {name} already removed ({e.status_code})")

    async def _recreate(
        self,
        snapshot: Dict[str, Any],
        config: Dict[str, Any],
        name: str,
        spec: InterceptionSpec,
    ) -> str:
        new_id = await self.engine.create_container(config, name=name)
        logger.info(f"Created intercepted container {name} ({new_id[:12]})")

        networks = snapshot["NetworkSettings"].get("Networks") or {}
        await self._reconnect_networks(new_id, networks)

        if spec.mode == "inject":
            archive = await asyncio.to_thread(
                pack_interception_files,
                self.overrides_dir,
                spec.cert_content,
                self.config.overrides_path,
                self.config.ca_path,
            )
            await self.engine.put_archive(new_id, "/", archive)
            logger.debug(f"Injected interception files into {name}")

        await self.engine.start_container(new_id)
        logger.info(f"Started intercepted container {name} on proxy port {spec.proxy_port}")
        return new_id

    async def _reconnect_networks(self, container_id: str, networks: Dict[str, Any]) -> None:
        """Connect every network beyond the first, which create() already attached."""
        remaining: List[str] = list(networks)[1:]
        if not remaining:
            return

        await gather_settled(*(
            self.engine.connect_network(network, container_id, networks[network])
            for network in remaining
        ))
        logger.debug(f"Reconnected networks {', '.join(remaining)}")
