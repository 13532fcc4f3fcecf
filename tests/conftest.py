"""Shared fixtures: sample configuration and a fake asyncua client."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from asyncua import ua

from uapoller._UAConfig_ import ReadClientConfig

SAMPLE_CONFIG = {
    "name": "localhost",
    "endpoint": "opc.tcp://localhost:4840",
    "connect_timeout": "10s",
    "request_timeout": "5s",
    "security_policy": "auto",
    "security_mode": "auto",
    "certificate": "/etc/uapoller/cert.pem",
    "private_key": "/etc/uapoller/key.pem",
    "auth_method": "Anonymous",
    "username": "",
    "password": "",
    "nodes": [
        {"name": "name", "namespace": "1", "identifier_type": "s", "identifier": "one",
         "tags": [["tag0", "val0"]]},
        {"name": "name2", "namespace": "2", "identifier_type": "s", "identifier": "two",
         "tags": [["tag0", "val0"], ["tag00", "val00"]], "default_tags": {"tag6": "val6"}},
    ],
    "group": [
        {"name": "foo", "namespace": "3", "identifier_type": "i",
         "tags": [["tag1", "val1"], ["tag2", "val2"]],
         "nodes": [{"name": "name3", "identifier": "3000", "tags": [["tag3", "val3"]]}]},
        {"name": "bar", "namespace": "0", "identifier_type": "i",
         "tags": [["tag1", "val1"], ["tag2", "val2"]],
         "nodes": [
             {"name": "name4", "identifier": "4000", "tags": [["tag4", "val4"]],
              "default_tags": {"tag1": "override"}},
             {"name": "name5", "identifier": "4001"},
         ]},
    ],
    "workarounds": {"additional_valid_status_codes": ["0xC0"]},
    "request_workarounds": {"use_unregistered_reads": True},
}


@pytest.fixture
def sample_config() -> ReadClientConfig:
    return ReadClientConfig.from_dict(SAMPLE_CONFIG)


def plain_config(**overrides) -> ReadClientConfig:
    """Unsecured anonymous config with three root nodes."""
    data = {
        "name": "testing",
        "endpoint": "opc.tcp://server:4840",
        "connect_timeout": 1,
        "request_timeout": 1,
        "security_policy": "None",
        "security_mode": "None",
        "auth_method": "Anonymous",
        "nodes": [
            {"name": "ProductName", "namespace": "0", "identifier_type": "i", "identifier": "2261"},
            {"name": "badnode", "namespace": "1", "identifier_type": "i", "identifier": "1337"},
            {"name": "goodnode", "namespace": "1", "identifier_type": "s", "identifier": "the.answer"},
        ],
    }
    data.update(overrides)
    return ReadClientConfig.from_dict(data)


def make_data_value(value=None, vtype=None, status=0, source=None, server=None):
    variant = ua.Variant(value, vtype) if vtype is not None else ua.Variant(value)
    return SimpleNamespace(
        Value=variant,
        StatusCode=SimpleNamespace(value=status),
        SourceTimestamp=source,
        ServerTimestamp=server,
    )


def make_client():
    client = MagicMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.connect_and_get_server_endpoints = AsyncMock(return_value=[])
    client.set_security = AsyncMock()
    client.load_client_certificate = AsyncMock()
    client.load_private_key = AsyncMock()
    client.register_nodes = AsyncMock(side_effect=lambda nodes: list(nodes))
    client.read_attributes = AsyncMock(return_value=[])
    client.get_node = MagicMock(side_effect=lambda node_id: SimpleNamespace(nodeid=node_id))
    return client


class ClientFactory:
    """Stands in for asyncua.Client; records how it was constructed."""

    def __init__(self, client=None):
        self.client = client or make_client()
        self.calls = []

    def __call__(self, url, timeout=None):
        self.calls.append((url, timeout))
        return self.client


@pytest.fixture
def client_factory() -> ClientFactory:
    return ClientFactory()
