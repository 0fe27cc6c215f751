"""Exceptions raised by shunt."""


class ShuntError(Exception):
    """Base class for shunt errors."""
    pass


class MalformedEnvEntry(ShuntError, ValueError):
    """An environment entry without a '=' separator."""

    def __init__(self, entry: str):
        super().__init__(f"Env var without '=': {entry!r}")
        self.entry = entry


class NoPortMapped(ShuntError, LookupError):
    """The tunnel container publishes no loopback port."""

    def __init__(self, container_name: str, port_key: str):
        super().__init__(f"No port mapped for Docker tunnel {container_name} ({port_key})")
        self.container_name = container_name
        self.port_key = port_key
