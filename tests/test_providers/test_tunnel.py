"""Tests for the tunnel provider."""

import asyncio
import sys

import pytest
from unittest.mock import AsyncMock, MagicMock, call, patch

from docker.errors import APIError, NotFound
from packaging.version import Version

from shunt.errors import NoPortMapped
from shunt.models.config import TunnelConfig
from shunt.models.tunnel import TunnelState
from shunt.providers import tunnel as tunnel_module
from shunt.providers.tunnel import TunnelProvider, coerce_version, get_tunnel_provider


NAME = "httptoolkit-docker-tunnel-8000"
LABEL = "tech.httptoolkit.docker.tunnel"
BRIDGE = {"Id": "D", "Name": "bridge", "IPAM": {"Config": [{"Subnet": "172.18.0.0/16", "Gateway": "172.18.0.1"}]}}


class FakeEngine:
    """Engine double keeping container state between calls."""

    def __init__(self, engine_version="24.0.7", bridge=BRIDGE, image_present=True):
        self.containers = {}
        self.mock = AsyncMock()
        self.mock.version.return_value = {"Version": engine_version}
        self.mock.list_networks.return_value = [bridge] if bridge else []
        self.mock.image_exists.return_value = image_present
        self.mock.ping.return_value = True
        self.mock.find_container.side_effect = self._find
        self.mock.inspect_container.side_effect = self._inspect
        self.mock.create_container.side_effect = self._create
        self.mock.start_container.side_effect = self._start

    def add(self, name, running=True, networks=(), ports=None):
        self.containers[name] = {
            "Id": f"id-{name}",
            "Name": f"/{name}",
            "State": {"Running": running},
            "NetworkSettings": {
                "Networks": {f"net-{n}": {"NetworkID": n} for n in networks},
                "Ports": ports or {},
            },
        }
        return self.containers[name]

    async def _find(self, name):
        await asyncio.sleep(0)
        return self.containers.get(name)

    async def _inspect(self, name):
        await asyncio.sleep(0)
        if name not in self.containers:
            raise NotFound(f"No such container: {name}")
        return self.containers[name]

    async def _create(self, config, name=None):
        await asyncio.sleep(0)
        self.add(name, running=False)["Config"] = config
        return f"id-{name}"

    async def _start(self, container_id):
        await asyncio.sleep(0)
        for container in self.containers.values():
            if container["Id"] == container_id:
                container["State"]["Running"] = True


def api_error(status_code, cls=APIError):
    return cls("engine error", response=MagicMock(status_code=status_code))


@pytest.fixture
def fake():
    return FakeEngine()


@pytest.fixture
def provider(fake):
    return TunnelProvider(fake.mock)


@pytest.fixture
def on_linux():
    with patch.object(sys, "platform", "linux"):
        yield


@pytest.mark.parametrize("raw,expected", [
    ("20.10.7", "20.10.7"),
    ("24.0.0-rc.1", "24.0.0"),
    ("1.13.1", "1.13.1"),
    ("19.03", "19.3.0"),
    ("27", "27.0.0"),
    ("dev", "0.0.0"),
    (None, "0.0.0"),
])
def test_coerce_version(raw, expected):
    """Test loose engine version parsing."""
    assert coerce_version(raw) == Version(expected)


def test_get_tunnel_provider_is_shared(monkeypatch):
    """Test every caller shares one provider, and so one lock."""
    monkeypatch.setattr(tunnel_module, "_tunnel_provider", None)
    engine = AsyncMock()

    first = get_tunnel_provider(engine)
    second = get_tunnel_provider(AsyncMock())

    assert first is second
    assert first.engine is engine


def test_get_tunnel_provider_warns_on_new_config(monkeypatch, caplog):
    """Test a different config on a later call is reported, not applied."""
    monkeypatch.setattr(tunnel_module, "_tunnel_provider", None)
    engine = AsyncMock()
    first = get_tunnel_provider(engine, TunnelConfig())

    with caplog.at_level("WARNING", logger="shunt.providers.tunnel"):
        get_tunnel_provider(engine, TunnelConfig())
        assert not caplog.records

        second = get_tunnel_provider(engine, TunnelConfig(internal_port=1081))

    assert second is first
    assert second.config.internal_port == 1080
    assert "ignoring new engine/config" in caplog.text


@pytest.mark.asyncio
class TestEnsureRunning:
    """Test tunnel lifecycle management."""

    async def test_creates_and_starts(self, provider, fake, on_linux):
        """Test a missing tunnel is created with the expected config and started."""
        await provider.ensure_running(8000)

        fake.mock.create_container.assert_awaited_once()
        config = fake.mock.create_container.await_args.args[0]
        assert fake.mock.create_container.await_args.kwargs["name"] == NAME
        assert config["Image"] == "httptoolkit/docker-socks-tunnel:v1.1.0"
        assert config["Labels"] == {LABEL: "8000"}
        host_config = config["HostConfig"]
        assert host_config["AutoRemove"] is True
        assert host_config["PortBindings"] == {
            "1080/tcp": [{"HostIp": "127.0.0.1", "HostPort": ""}]
        }
        fake.mock.start_container.assert_awaited_once_with(f"id-{NAME}")
        assert fake.containers[NAME]["State"]["Running"] is True

    async def test_second_call_is_noop(self, provider, fake):
        """Test calling twice creates at most once."""
        await provider.ensure_running(8000)
        await provider.ensure_running(8000)

        assert fake.mock.create_container.await_count == 1
        assert fake.mock.start_container.await_count == 1

    async def test_concurrent_calls_create_once(self, provider, fake):
        """Test the lock stops concurrent callers creating duplicates."""
        await asyncio.gather(*(provider.ensure_running(8000) for _ in range(3)))

        assert fake.mock.create_container.await_count == 1

    async def test_starts_stopped_container(self, provider, fake):
        """Test an existing stopped tunnel is started, not recreated."""
        fake.add(NAME, running=False)

        await provider.ensure_running(8000)

        fake.mock.create_container.assert_not_awaited()
        fake.mock.start_container.assert_awaited_once_with(f"id-{NAME}")

    async def test_pulls_missing_image(self, provider, fake):
        """Test the image is pulled only when not present locally."""
        fake.mock.image_exists.return_value = False

        await provider.ensure_running(8000)

        fake.mock.pull_image.assert_awaited_once_with("httptoolkit/docker-socks-tunnel:v1.1.0")

    async def test_skips_pull_for_present_image(self, provider, fake):
        """Test a present image isn't pulled again."""
        await provider.ensure_running(8000)

        fake.mock.pull_image.assert_not_awaited()

    async def test_pull_failure_propagates(self, provider, fake):
        """Test an image that can't be fetched fails the call."""
        fake.mock.image_exists.return_value = False
        fake.mock.pull_image.side_effect = api_error(500)

        with pytest.raises(APIError):
            await provider.ensure_running(8000)

        fake.mock.create_container.assert_not_awaited()

    async def test_host_gateway_on_modern_engine(self, provider, fake, on_linux):
        """Test engines >= 20.10 use the host-gateway token."""
        fake.mock.version.return_value = {"Version": "20.10.0"}

        await provider.ensure_running(8000)

        config = fake.mock.create_container.await_args.args[0]
        assert config["HostConfig"]["ExtraHosts"] == ["host.docker.internal:host-gateway"]

    async def test_bridge_gateway_on_old_engine(self, provider, fake, on_linux):
        """Test older engines use the default bridge gateway."""
        fake.mock.version.return_value = {"Version": "19.03.12"}

        await provider.ensure_running(8000)

        config = fake.mock.create_container.await_args.args[0]
        assert config["HostConfig"]["ExtraHosts"] == ["host.docker.internal:172.18.0.1"]

    async def test_fallback_gateway_without_bridge(self, on_linux):
        """Test the well-known default is used when no bridge is found."""
        fake = FakeEngine(engine_version="18.09.1", bridge=None)

        await TunnelProvider(fake.mock).ensure_running(8000)

        config = fake.mock.create_container.await_args.args[0]
        assert config["HostConfig"]["ExtraHosts"] == ["host.docker.internal:172.17.0.1"]

    async def test_no_extra_hosts_off_linux(self, provider, fake):
        """Test other platforms already resolve the host name."""
        with patch.object(sys, "platform", "darwin"):
            await provider.ensure_running(8000)

        config = fake.mock.create_container.await_args.args[0]
        assert "ExtraHosts" not in config["HostConfig"]
        fake.mock.version.assert_not_awaited()

    async def test_custom_config(self, fake):
        """Test names and labels follow configuration."""
        provider = TunnelProvider(fake.mock, TunnelConfig(name_prefix="tun", label="x.tunnel"))

        await provider.ensure_running(9000)

        config = fake.mock.create_container.await_args.args[0]
        assert fake.mock.create_container.await_args.kwargs["name"] == "tun-9000"
        assert config["Labels"] == {"x.tunnel": "9000"}


@pytest.mark.asyncio
class TestPrepare:
    """Test image pre-pulling."""

    async def test_pulls_image(self, provider, fake):
        await provider.prepare()

        fake.mock.pull_image.assert_awaited_once()

    async def test_pull_failure_swallowed(self, provider, fake):
        """Test pre-pull failures never raise."""
        fake.mock.pull_image.side_effect = api_error(500)

        await provider.prepare()

    async def test_skipped_without_docker(self, provider, fake):
        """Test nothing is pulled when the engine is unreachable."""
        fake.mock.ping.return_value = False

        await provider.prepare()

        fake.mock.pull_image.assert_not_awaited()


@pytest.mark.asyncio
class TestStatus:
    """Test tunnel state queries."""

    async def test_states(self, provider, fake):
        assert await provider.status(8000) == TunnelState.ABSENT

        fake.add(NAME, running=False)
        assert await provider.status(8000) == TunnelState.STOPPED

        fake.add(NAME, running=True)
        assert await provider.status(8000) == TunnelState.RUNNING


@pytest.mark.asyncio
class TestUpdateNetworks:
    """Test network reconciliation."""

    async def test_symmetric_difference(self, provider, fake):
        """Test connecting missing networks and disconnecting extras."""
        fake.add(NAME, networks=("A", "B"))

        missing, extra = await provider.update_networks(8000, ["B", "C"])

        assert missing == {"C", "D"}
        assert extra == {"A"}
        fake.mock.connect_network.assert_has_awaits(
            [call("C", f"id-{NAME}"), call("D", f"id-{NAME}")], any_order=True
        )
        assert fake.mock.connect_network.await_count == 2
        fake.mock.disconnect_network.assert_awaited_once_with("A", f"id-{NAME}")

    async def test_bridge_never_removed(self, provider, fake):
        """Test the default bridge stays attached even if not requested."""
        fake.add(NAME, networks=("D", "A"))

        missing, extra = await provider.update_networks(8000, [])

        assert missing == set()
        assert extra == {"A"}
        fake.mock.disconnect_network.assert_awaited_once_with("A", f"id-{NAME}")

    async def test_already_in_sync(self, provider, fake):
        """Test nothing happens when membership already matches."""
        fake.add(NAME, networks=("D", "B"))

        assert await provider.update_networks(8000, {"B"}) == (set(), set())

        fake.mock.connect_network.assert_not_awaited()
        fake.mock.disconnect_network.assert_not_awaited()

    async def test_recreates_missing_tunnel(self, provider, fake):
        """Test a vanished tunnel is brought back before reconciling."""
        missing, extra = await provider.update_networks(8000, ["C"])

        fake.mock.create_container.assert_awaited_once()
        assert missing == {"C", "D"}
        assert extra == set()

    async def test_without_builtin_bridge(self, fake):
        """Test engines without a builtin bridge reconcile to the request only."""
        fake = FakeEngine(bridge=None)
        fake.add(NAME, networks=("A",))

        missing, extra = await TunnelProvider(fake.mock).update_networks(8000, ["C"])

        assert missing == {"C"}
        assert extra == {"A"}

    async def test_disconnect_not_connected_tolerated(self, provider, fake):
        """Test disconnecting an already detached network is not an error."""
        fake.add(NAME, networks=("D", "A"))
        fake.mock.disconnect_network.side_effect = api_error(404, cls=NotFound)

        await provider.update_networks(8000, [])

    async def test_disconnect_failure_propagates(self, provider, fake):
        """Test other disconnect failures surface."""
        fake.add(NAME, networks=("D", "A"))
        fake.mock.disconnect_network.side_effect = api_error(500)

        with pytest.raises(APIError):
            await provider.update_networks(8000, [])

    async def test_connect_failure_propagates(self, provider, fake):
        """Test connect failures surface."""
        fake.add(NAME, networks=("D",))
        fake.mock.connect_network.side_effect = api_error(500)

        with pytest.raises(APIError):
            await provider.update_networks(8000, ["C"])

    async def test_failure_waits_for_other_calls_under_lock(self, provider, fake):
        """Test a fast failure only surfaces after slower calls finish, lock held."""
        fake.add(NAME, networks=())
        in_flight = set()
        lock_held_at_finish = []

        async def connect(network, container_id):
            if network == "A":
                raise api_error(500)
            in_flight.add(network)
            await asyncio.sleep(0.05)
            lock_held_at_finish.append(provider._lock.locked())
            in_flight.discard(network)

        fake.mock.connect_network.side_effect = connect

        with pytest.raises(APIError):
            await provider.update_networks(8000, ["A", "B"])

        assert in_flight == set()
        assert lock_held_at_finish == [True, True]
        assert not provider._lock.locked()

    async def test_reinspects_inside_lock(self, provider, fake):
        """Test membership is read after the lock is acquired."""
        fake.add(NAME, networks=("D", "A"))

        await provider._lock.acquire()
        task = asyncio.create_task(provider.update_networks(8000, ["A", "C"]))
        await asyncio.sleep(0.01)
        # Membership changes while the reconciler waits for the lock
        fake.add(NAME, networks=("D", "C"))
        provider._lock.release()
        missing, extra = await task

        assert missing == {"A"}
        assert extra == set()


@pytest.mark.asyncio
class TestGetPort:
    """Test tunnel port lookup."""

    async def test_loopback_port(self, provider, fake):
        """Test the loopback mapping is returned."""
        fake.add(NAME, ports={"1080/tcp": [
            {"HostIp": "0.0.0.0", "HostPort": "1111"},
            {"HostIp": "127.0.0.1", "HostPort": "49153"},
        ]})

        assert await provider.get_port(8000) == 49153

    async def test_no_loopback_mapping(self, provider, fake):
        """Test a missing loopback mapping raises NoPortMapped."""
        fake.add(NAME, ports={"1080/tcp": [{"HostIp": "0.0.0.0", "HostPort": "1111"}]})

        with pytest.raises(NoPortMapped) as exc_info:
            await provider.get_port(8000)

        assert exc_info.value.container_name == NAME

    async def test_no_ports_at_all(self, provider, fake):
        """Test a tunnel without any published ports raises NoPortMapped."""
        fake.add(NAME, ports={"1080/tcp": None})

        with pytest.raises(NoPortMapped):
            await provider.get_port(8000)

    async def test_recreates_missing_tunnel(self, provider, fake):
        """Test a missing tunnel is recreated and re-inspected."""
        async def create_with_port(config, name=None):
            container = fake.add(name, running=False, ports={
                "1080/tcp": [{"HostIp": "127.0.0.1", "HostPort": "40000"}]
            })
            return container["Id"]

        fake.mock.create_container.side_effect = create_with_port

        assert await provider.get_port(8000) == 40000
        fake.mock.create_container.assert_awaited_once()


@pytest.mark.asyncio
class TestStop:
    """Test tunnel teardown."""

    async def test_stop_all(self, provider, fake):
        """Test every labelled tunnel is killed and removed."""
        fake.mock.list_containers.return_value = [{"Id": "t1"}, {"Id": "t2"}]

        assert await provider.stop("all") == 2

        fake.mock.list_containers.assert_awaited_once_with(filters={"label": [LABEL]}, all=True)
        fake.mock.kill_container.assert_has_awaits([call("t1"), call("t2")], any_order=True)
        fake.mock.remove_container.assert_has_awaits([call("t1"), call("t2")], any_order=True)

    async def test_stop_single_port(self, provider, fake):
        """Test stopping one proxy's tunnel filters by its label value."""
        fake.mock.list_containers.return_value = [{"Id": "t1"}]

        await provider.stop(8080)

        fake.mock.list_containers.assert_awaited_once_with(
            filters={"label": [f"{LABEL}=8080"]}, all=True
        )

    async def test_failures_swallowed(self, provider, fake):
        """Test one failed kill doesn't stop the rest of the teardown."""
        fake.mock.list_containers.return_value = [{"Id": "t1"}, {"Id": "t2"}]
        fake.mock.kill_container.side_effect = [api_error(409), None]
        fake.mock.remove_container.side_effect = api_error(500)

        assert await provider.stop("all") == 2

        assert fake.mock.kill_container.await_count == 2
        assert fake.mock.remove_container.await_count == 2

    async def test_nothing_to_stop(self, provider, fake):
        fake.mock.list_containers.return_value = []

        assert await provider.stop(8000) == 0
        fake.mock.kill_container.assert_not_awaited()
