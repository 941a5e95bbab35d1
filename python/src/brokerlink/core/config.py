"""
Client configuration.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping, Optional

ENV_PREFIX = "BROKERLINK_"


class ReconnectMode(Enum):
    """How the client retries after losing the broker connection."""

    DISABLED = "disabled"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class ReconnectPolicy:
    """
    Reconnect schedule.

    - DISABLED: never reconnect; streams end with ConnectionLost
    - FIXED: wait `delay` seconds before every attempt
    - EXPONENTIAL: wait delay, delay*multiplier, ... capped at max_delay

    max_attempts=None retries forever.
    """

    mode: ReconnectMode = ReconnectMode.EXPONENTIAL
    delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_attempts: Optional[int] = 10

    @classmethod
    def disabled(cls) -> "ReconnectPolicy":
        return cls(mode=ReconnectMode.DISABLED, max_attempts=0)

    @classmethod
    def fixed(cls, delay: float, max_attempts: Optional[int] = 10) -> "ReconnectPolicy":
        return cls(mode=ReconnectMode.FIXED, delay=delay, max_attempts=max_attempts)

    @classmethod
    def exponential(
        cls,
        delay: float = 0.5,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        max_attempts: Optional[int] = 10,
    ) -> "ReconnectPolicy":
        return cls(
            mode=ReconnectMode.EXPONENTIAL,
            delay=delay,
            max_delay=max_delay,
            multiplier=multiplier,
            max_attempts=max_attempts,
        )

    @property
    def enabled(self) -> bool:
        return self.mode is not ReconnectMode.DISABLED and self.max_attempts != 0

    def delays(self) -> Iterator[float]:
        """Seconds to wait before each reconnect attempt."""
        if not self.enabled:
            return
        attempt = 0
        delay = self.delay
        while self.max_attempts is None or attempt < self.max_attempts:
            yield delay
            attempt += 1
            if self.mode is ReconnectMode.EXPONENTIAL:
                delay = min(delay * self.multiplier, self.max_delay)


@dataclass
class ClientConfig:
    """
    Settings for a Client.

    Timeouts are in seconds. default_timeout=None lets get/set wait as long as
    the connection stays up. heartbeat_interval=0 disables liveness checks.
    """

    connect_timeout: float = 5.0
    default_timeout: Optional[float] = None
    queue_capacity: int = 64
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    heartbeat_interval: float = 5.0
    heartbeat_timeout: float = 3.0
    heartbeat_max_misses: int = 3

    def __post_init__(self):
        if self.queue_capacity < 1:
            raise ValueError(f"queue_capacity must be at least 1, got {self.queue_capacity}")
        if self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {self.connect_timeout}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """
        Build a config from BROKERLINK_* environment variables.

        Recognized: CONNECT_TIMEOUT, DEFAULT_TIMEOUT, QUEUE_CAPACITY,
        HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT, HEARTBEAT_MAX_MISSES,
        RECONNECT (disabled|fixed|exponential), RECONNECT_DELAY,
        RECONNECT_MAX_DELAY, RECONNECT_MAX_ATTEMPTS. Unset variables keep
        their defaults.
        """
        env = os.environ if environ is None else environ

        def read(name, convert):
            key = ENV_PREFIX + name
            raw = env.get(key)
            if raw is None or raw == "":
                return None
            try:
                return convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {key}: {raw!r} ({e})")

        kwargs = {}
        for name, attr, convert in (
            ("CONNECT_TIMEOUT", "connect_timeout", float),
            ("DEFAULT_TIMEOUT", "default_timeout", float),
            ("QUEUE_CAPACITY", "queue_capacity", int),
            ("HEARTBEAT_INTERVAL", "heartbeat_interval", float),
            ("HEARTBEAT_TIMEOUT", "heartbeat_timeout", float),
            ("HEARTBEAT_MAX_MISSES", "heartbeat_max_misses", int),
        ):
            value = read(name, convert)
            if value is not None:
                kwargs[attr] = value

        policy = ReconnectPolicy()
        mode = read("RECONNECT", lambda raw: ReconnectMode(raw.lower()))
        if mode is not None:
            policy.mode = mode
        delay = read("RECONNECT_DELAY", float)
        if delay is not None:
            policy.delay = delay
        max_delay = read("RECONNECT_MAX_DELAY", float)
        if max_delay is not None:
            policy.max_delay = max_delay
        max_attempts = read("RECONNECT_MAX_ATTEMPTS", int)
        if max_attempts is not None:
            policy.max_attempts = max_attempts if max_attempts >= 0 else None
        kwargs["reconnect"] = policy

        return cls(**kwargs)


def normalize_address(address: str) -> str:
    """
    Turn "host:port" or "tcp://host:port" into a ZeroMQ endpoint.

    A missing scheme defaults to tcp://.

    Raises:
        ValueError: no host or no valid port
    """
    if not isinstance(address, str) or not address.strip():
        raise ValueError("No broker address specified")
    address = address.strip()
    if "://" not in address:
        address = f"tcp://{address}"

    scheme, _, rest = address.partition("://")
    if scheme == "tcp":
        host, sep, port = rest.rstrip("/").rpartition(":")
        if not sep or not host:
            raise ValueError(f"Broker address '{address}' has no host:port")
        try:
            port_number = int(port)
        except ValueError:
            raise ValueError(f"Broker address '{address}' has an invalid port")
        if not 0 < port_number < 65536:
            raise ValueError(f"Broker address '{address}' port out of range")
        return f"tcp://{host}:{port_number}"
    if not rest:
        raise ValueError(f"Broker address '{address}' is empty")
    return address
