"""
Tests for ClientConfig, ReconnectPolicy and address handling.
"""

import itertools
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from brokerlink.core.config import (
    ClientConfig,
    ReconnectMode,
    ReconnectPolicy,
    normalize_address,
)


class TestReconnectPolicy:
    def test_disabled(self):
        policy = ReconnectPolicy.disabled()
        assert not policy.enabled
        assert list(policy.delays()) == []

    def test_zero_attempts_is_disabled(self):
        assert not ReconnectPolicy.fixed(1.0, max_attempts=0).enabled

    def test_fixed(self):
        assert list(ReconnectPolicy.fixed(0.25, max_attempts=3).delays()) == [0.25, 0.25, 0.25]

    def test_exponential_is_capped(self):
        policy = ReconnectPolicy.exponential(delay=1.0, max_delay=5.0, multiplier=2.0, max_attempts=5)
        assert list(policy.delays()) == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_unlimited(self):
        policy = ReconnectPolicy.fixed(0.1, max_attempts=None)
        assert policy.enabled
        assert len(list(itertools.islice(policy.delays(), 100))) == 100


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig()
        assert config.connect_timeout == 5.0
        assert config.default_timeout is None
        assert config.queue_capacity == 64
        assert config.reconnect.mode is ReconnectMode.EXPONENTIAL

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ClientConfig(queue_capacity=0)

    def test_invalid_connect_timeout(self):
        with pytest.raises(ValueError):
            ClientConfig(connect_timeout=0)

    def test_from_env(self):
        config = ClientConfig.from_env(
            {
                "BROKERLINK_CONNECT_TIMEOUT": "2.5",
                "BROKERLINK_DEFAULT_TIMEOUT": "1",
                "BROKERLINK_QUEUE_CAPACITY": "8",
                "BROKERLINK_HEARTBEAT_INTERVAL": "0",
                "BROKERLINK_RECONNECT": "FIXED",
                "BROKERLINK_RECONNECT_DELAY": "0.2",
                "BROKERLINK_RECONNECT_MAX_ATTEMPTS": "-1",
                "UNRELATED": "x",
            }
        )
        assert config.connect_timeout == 2.5
        assert config.default_timeout == 1.0
        assert config.queue_capacity == 8
        assert config.heartbeat_interval == 0
        assert config.reconnect.mode is ReconnectMode.FIXED
        assert config.reconnect.delay == 0.2
        assert config.reconnect.max_attempts is None

    def test_from_env_empty(self):
        assert ClientConfig.from_env({}) == ClientConfig()

    def test_from_env_invalid_names_variable(self):
        with pytest.raises(ValueError, match="BROKERLINK_QUEUE_CAPACITY"):
            ClientConfig.from_env({"BROKERLINK_QUEUE_CAPACITY": "lots"})
        with pytest.raises(ValueError, match="BROKERLINK_RECONNECT"):
            ClientConfig.from_env({"BROKERLINK_RECONNECT": "sometimes"})

    def test_from_process_environment(self, monkeypatch):
        monkeypatch.setenv("BROKERLINK_QUEUE_CAPACITY", "16")
        assert ClientConfig.from_env().queue_capacity == 16


class TestNormalizeAddress:
    def test_scheme_defaults_to_tcp(self):
        assert normalize_address("localhost:55555") == "tcp://localhost:55555"

    def test_tcp_kept(self):
        assert normalize_address("tcp://10.0.0.1:80") == "tcp://10.0.0.1:80"

    def test_other_schemes_pass_through(self):
        assert normalize_address("ipc:///tmp/broker") == "ipc:///tmp/broker"

    @pytest.mark.parametrize(
        "address", ["", "   ", "localhost", ":55555", "localhost:http", "localhost:70000"]
    )
    def test_invalid(self, address):
        with pytest.raises(ValueError):
            normalize_address(address)
