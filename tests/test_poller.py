import asyncio
import functools
import logging

import pytest
from asyncua import ua

from uapoller._UAEmitter_ import MetricAccumulator
from uapoller._UAErrors_ import CommunicationError, ConfigurationError, PollerError, TotalReadFailure
from uapoller._UAPoller_ import _OPCUAPoller_
from uapoller._UASession_ import connect

from conftest import make_data_value, plain_config


def _values(answer=42):
    return [
        make_data_value("open62541 OPC UA Server", ua.VariantType.String),
        make_data_value(None, status=ua.StatusCodes.BadNodeIdUnknown),
        make_data_value(answer, ua.VariantType.Int32),
    ]


def _poller(client_factory, **overrides):
    poller = _OPCUAPoller_(plain_config(**overrides), connector=functools.partial(connect, client_factory=client_factory))
    poller.init()
    return poller


def _block_reads(client):
    """Make read_attributes hang until the returned event is set."""
    release = asyncio.Event()

    async def blocked(nodes):
        await release.wait()
        return _values()

    client.read_attributes.side_effect = blocked
    return release


def test_init_builds_mappings(client_factory):
    poller = _poller(client_factory)
    assert [m.field_name for m in poller.node_metric_mapping] == ["ProductName", "badnode", "goodnode"]
    assert poller.last_received_data == []
    assert poller.session is None


def test_init_rejects_invalid_configuration(client_factory):
    poller = _OPCUAPoller_(plain_config(nodes=[{"name": "x", "identifier_type": "i", "identifier": "1"}]))
    with pytest.raises(ConfigurationError):
        poller.init()


@pytest.mark.asyncio
async def test_read_requires_init():
    poller = _OPCUAPoller_(plain_config())
    with pytest.raises(PollerError):
        await poller.read()


@pytest.mark.asyncio
async def test_gather_emits_readable_nodes(client_factory):
    """ProductName and goodnode are emitted, badnode is left out."""
    client_factory.client.read_attributes.return_value = _values()
    poller = _poller(client_factory)
    acc = MetricAccumulator()

    await poller.gather(acc)

    assert acc.errors == []
    assert len(acc.metrics) == 1
    assert acc.metrics[0].name == "testing"
    assert acc.metrics[0].fields == {"ProductName": "open62541 OPC UA Server", "goodnode": 42}
    assert [v.value for v in poller.last_received_data] == ["open62541 OPC UA Server", None, 42]


@pytest.mark.asyncio
async def test_session_is_reused_between_cycles(client_factory):
    client_factory.client.read_attributes.return_value = _values()
    poller = _poller(client_factory)
    acc = MetricAccumulator()
    await poller.gather(acc)
    await poller.gather(acc)
    assert len(client_factory.calls) == 1
    client_factory.client.register_nodes.assert_awaited_once()
    assert len(acc.metrics) == 2


@pytest.mark.asyncio
async def test_total_failure_keeps_previous_data_and_reconnects(client_factory):
    client = client_factory.client
    client.read_attributes.return_value = _values(answer=1)
    poller = _poller(client_factory)
    acc = MetricAccumulator()
    await poller.gather(acc)
    previous = poller.last_received_data

    client.read_attributes.side_effect = ConnectionResetError("reset by peer")
    await poller.gather(acc)
    assert len(acc.errors) == 1
    assert isinstance(acc.errors[0], TotalReadFailure)
    assert poller.last_received_data is previous
    assert poller.session is None
    client.disconnect.assert_awaited()

    client.read_attributes.side_effect = None
    client.read_attributes.return_value = _values(answer=2)
    await poller.gather(acc)
    assert len(client_factory.calls) == 2
    assert client.register_nodes.await_count == 2
    assert poller.last_received_data[2].value == 2


@pytest.mark.asyncio
async def test_connect_failure_is_reported(client_factory):
    client_factory.client.connect.side_effect = ConnectionRefusedError("connection refused")
    poller = _poller(client_factory)
    acc = MetricAccumulator()
    await poller.gather(acc)
    assert acc.metrics == []
    assert len(acc.errors) == 1
    assert isinstance(acc.errors[0], CommunicationError)
    assert poller.last_received_data == []
    assert poller.session is None


@pytest.mark.asyncio
async def test_all_nodes_failed_gives_no_metric(client_factory):
    client_factory.client.read_attributes.return_value = [
        make_data_value(None, status=ua.StatusCodes.BadNodeIdUnknown) for _ in range(3)
    ]
    poller = _poller(client_factory)
    acc = MetricAccumulator()
    await poller.gather(acc)
    assert acc.metrics == []
    assert acc.errors == []
    assert len(poller.last_received_data) == 3


@pytest.mark.asyncio
async def test_node_failures_are_logged_once_per_change(client_factory, caplog):
    caplog.set_level(logging.DEBUG)
    client = client_factory.client
    client.read_attributes.return_value = _values()
    poller = _poller(client_factory)
    acc = MetricAccumulator()

    await poller.gather(acc)
    await poller.gather(acc)
    info = [r for r in caplog.records if r.levelno == logging.INFO and "returned no value" in r.getMessage()]
    assert len(info) == 1
    assert "badnode" in info[0].getMessage()

    client.read_attributes.return_value = [
        make_data_value("p", ua.VariantType.String),
        make_data_value(7, ua.VariantType.Int32),
        make_data_value(42, ua.VariantType.Int32),
    ]
    await poller.gather(acc)
    assert any("readable again" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_tick_skips_while_cycle_running(client_factory):
    release = _block_reads(client_factory.client)
    poller = _poller(client_factory)
    acc = MetricAccumulator()

    assert poller.tick(acc) is True
    await asyncio.sleep(0.01)
    assert poller.cycle_running
    assert poller.tick(acc) is False

    release.set()
    await poller._cycle_task
    assert len(acc.metrics) == 1
    assert poller.tick(acc) is True
    await poller.stop()


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_cycle(client_factory):
    _block_reads(client_factory.client)
    poller = _poller(client_factory)
    acc = MetricAccumulator()

    poller.tick(acc)
    await asyncio.sleep(0.01)
    await poller.stop()

    assert not poller.cycle_running
    assert acc.metrics == []
    assert poller.last_received_data == []
    assert poller.session is None
    client_factory.client.disconnect.assert_awaited()


@pytest.mark.asyncio
async def test_run_collects_until_stopped(client_factory):
    client_factory.client.read_attributes.return_value = _values()
    poller = _OPCUAPoller_(plain_config(), connector=functools.partial(connect, client_factory=client_factory))
    acc = MetricAccumulator()

    runner = asyncio.create_task(poller.run(acc, 0.01))
    for _ in range(200):
        if len(acc.metrics) >= 2:
            break
        await asyncio.sleep(0.01)
    await poller.stop()
    await asyncio.wait_for(runner, timeout=1)

    assert len(acc.metrics) >= 2
    assert poller.session is None
    assert len(client_factory.calls) == 1


def test_init_rejects_string_tag_entry():
    config = plain_config(nodes=[{"name": "level", "namespace": "1", "identifier_type": "s",
                                  "identifier": "Tank1.Level", "tags": [["site", "north"]]}])
    config.root_nodes[0].tags.append("kv")
    with pytest.raises(ConfigurationError):
        _OPCUAPoller_(config).init()
