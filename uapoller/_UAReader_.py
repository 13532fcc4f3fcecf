import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from asyncua import ua

from uapoller._UAConfig_ import ReadClientWorkarounds
from uapoller._UAErrors_ import PerNodeReadError, SessionTimeoutError, TotalReadFailure
from uapoller._UAMapping_ import NodeMetricMapping
from uapoller._UASession_ import _OPCUASession_, status_name

STATUS_GOOD = ua.StatusCodes.Good

_INTEGER_RANGES = {
    ua.VariantType.SByte: (-2 ** 7, 2 ** 7 - 1),
    ua.VariantType.Byte: (0, 2 ** 8 - 1),
    ua.VariantType.Int16: (-2 ** 15, 2 ** 15 - 1),
    ua.VariantType.UInt16: (0, 2 ** 16 - 1),
    ua.VariantType.Int32: (-2 ** 31, 2 ** 31 - 1),
    ua.VariantType.UInt32: (0, 2 ** 32 - 1),
    ua.VariantType.Int64: (-2 ** 63, 2 ** 63 - 1),
    ua.VariantType.UInt64: (0, 2 ** 64 - 1),
}


@dataclass
class NodeValue:
    value: Any = None
    status: int = STATUS_GOOD
    variant_type: Optional[ua.VariantType] = None
    source_timestamp: Optional[datetime.datetime] = None
    server_timestamp: Optional[datetime.datetime] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def is_valid_status(code: int, additional_valid_codes: Iterable[int] = ()) -> bool:
    """A status is usable if it is Good or explicitly allowed by configuration."""
    return code == STATUS_GOOD or code in additional_valid_codes


def format_datetime(value: datetime.datetime) -> str:
    """RFC-3339 in UTC with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc)
    # strftime does not zero-pad years below 1000 everywhere
    text = (f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
            f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def decode_value(variant, node_id: Optional[str] = None) -> Any:
    """Turn a Variant into a metric field scalar, raising PerNodeReadError if it cannot be."""
    if variant is None:
        raise PerNodeReadError("no value returned", node_id)
    value = variant.Value
    vtype = variant.VariantType
    if vtype == ua.VariantType.Null or value is None:
        raise PerNodeReadError("value is null", node_id)
    if isinstance(value, (list, tuple)):
        raise PerNodeReadError(f"array values of type {vtype.name} are not supported", node_id)

    if vtype == ua.VariantType.Boolean:
        if isinstance(value, bool):
            return value
    elif vtype in _INTEGER_RANGES:
        low, high = _INTEGER_RANGES[vtype]
        if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
            return value
    elif vtype in (ua.VariantType.Float, ua.VariantType.Double):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif vtype == ua.VariantType.String:
        if isinstance(value, str):
            return value
    elif vtype == ua.VariantType.DateTime:
        if isinstance(value, datetime.datetime):
            return format_datetime(value)
    elif vtype == ua.VariantType.Guid:
        if isinstance(value, uuid.UUID):
            return str(value)
    elif vtype == ua.VariantType.LocalizedText:
        if isinstance(getattr(value, "Text", None), str):
            return value.Text
    elif vtype == ua.VariantType.QualifiedName:
        if isinstance(getattr(value, "Name", None), str):
            return value.Name
    elif vtype == ua.VariantType.ByteString:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).hex()
    elif vtype == ua.VariantType.StatusCode:
        if isinstance(getattr(value, "value", None), int):
            return value.value
    else:
        raise PerNodeReadError(f"unsupported value type {vtype.name}", node_id)
    raise PerNodeReadError(f"value {value!r} does not match declared type {vtype.name}", node_id)


def to_node_value(mapping: NodeMetricMapping, data_value, additional_valid_codes: Iterable[int]) -> NodeValue:
    status = data_value.StatusCode.value if data_value.StatusCode is not None else STATUS_GOOD
    variant = data_value.Value
    result = NodeValue(
        status=status,
        variant_type=getattr(variant, "VariantType", None),
        source_timestamp=data_value.SourceTimestamp,
        server_timestamp=data_value.ServerTimestamp,
    )
    if not is_valid_status(status, additional_valid_codes):
        result.error = f"status {status_name(status)} ({hex(status)})"
        return result
    try:
        result.value = decode_value(variant, mapping.node_id)
    except PerNodeReadError as e:
        result.error = str(e)
    return result


async def _read_unregistered(session: _OPCUASession_, mappings: Sequence[NodeMetricMapping]) -> List:
    client = session.client
    data_values = []
    for mapping in mappings:
        node = client.get_node(mapping.node_id)
        result = await asyncio.wait_for(client.read_attributes([node]), timeout=session.config.request_timeout)
        if len(result) != 1:
            raise TotalReadFailure(f"expected 1 result reading {mapping.node_id}, got {len(result)}")
        data_values.append(result[0])
    return data_values


async def _read_registered(session: _OPCUASession_, mappings: Sequence[NodeMetricMapping]) -> List:
    client = session.client
    timeout = session.config.request_timeout
    if session.registered_nodes is None:
        nodes = [client.get_node(mapping.node_id) for mapping in mappings]
        session.registered_nodes = await asyncio.wait_for(client.register_nodes(nodes), timeout=timeout)
        logging.debug(f"_read_registered: Registered {len(session.registered_nodes)} nodes")
    return await asyncio.wait_for(client.read_attributes(session.registered_nodes), timeout=timeout)


async def read_all(session: _OPCUASession_, mappings: Sequence[NodeMetricMapping],
                   request_workarounds: ReadClientWorkarounds,
                   additional_valid_codes: Iterable[int] = ()) -> List[NodeValue]:
    """
    Read every mapped node and return NodeValues in mapping order.

    Per-node problems end up as absent values; a failure of the exchange
    itself raises SessionTimeoutError or TotalReadFailure and nothing is
    returned for the cycle.
    """
    if not mappings:
        return []
    valid = set(additional_valid_codes)
    try:
        if request_workarounds.use_unregistered_reads:
            data_values = await _read_unregistered(session, mappings)
        else:
            data_values = await _read_registered(session, mappings)
    except TotalReadFailure:
        raise
    except asyncio.TimeoutError as e:
        raise SessionTimeoutError(f"read request timed out after {session.config.request_timeout}s") from e
    except ua.UaStatusCodeError as e:
        raise TotalReadFailure(f"read request failed: {status_name(e.code)} ({hex(e.code)})") from e
    except Exception as e:
        raise TotalReadFailure(f"read request failed: {str(e)}") from e

    if len(data_values) != len(mappings):
        raise TotalReadFailure(f"expected {len(mappings)} results, got {len(data_values)}")
    return [to_node_value(mapping, dv, valid) for mapping, dv in zip(mappings, data_values)]
