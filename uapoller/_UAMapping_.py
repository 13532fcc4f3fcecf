"""
Flattening of root nodes and node groups into an ordered list of
node-to-metric mappings.

The resulting order (root nodes first, then every group's nodes, both in
configuration order) is the order values are read, stored and emitted in.
"""
import logging
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

from uapoller._UAConfig_ import DEFAULT_METRIC_NAME, NodeGroupSettings, NodeSetting
from uapoller._UAErrors_ import ConfigurationError

IDENTIFIER_TYPES = ("i", "s", "g", "b")


def tags_slice_to_map(tags: Sequence[Sequence[str]]) -> Dict[str, str]:
    """Turn [[key, value], ...] into a dict; later duplicates win."""
    result = {}
    for index, pair in enumerate(tags or []):
        if isinstance(pair, str) or len(pair) != 2:
            raise ConfigurationError(f"tag {index} needs 2 values, has {len(pair)}: {pair!r}")
        key, value = str(pair[0]), str(pair[1])
        if not key:
            raise ConfigurationError(f"tag {index} has empty name")
        if not value:
            raise ConfigurationError(f"tag {index} has empty value")
        result[key] = value
    return result


def merge_tags(default_tags: Optional[Mapping[str, str]],
               group_tags: Optional[Sequence[Sequence[str]]],
               node_tags: Optional[Sequence[Sequence[str]]]) -> Dict[str, str]:
    """
    Combine the tag layers of one node into its final tag set.

    Group tags are applied first and node level tags overwrite them. A node's
    ``default_tags`` mapping is its node level tag set when given and then
    replaces the node's tag slice; otherwise the slice is used.
    Returns a new dict, inputs are not modified.
    """
    merged = tags_slice_to_map(group_tags)
    if default_tags:
        for key, value in default_tags.items():
            if not key:
                raise ConfigurationError("default tag has empty name")
            if not value:
                raise ConfigurationError(f"default tag {key!r} has empty value")
            merged[str(key)] = str(value)
    else:
        merged.update(tags_slice_to_map(node_tags))
    return merged


@dataclass(frozen=True)
class NodeMetricMapping:
    namespace: str
    identifier_type: str
    identifier: str
    metric_name: str
    field_name: str
    metric_tags: Mapping[str, str]

    @property
    def node_id(self) -> str:
        return f"ns={self.namespace};{self.identifier_type}={self.identifier}"

    def __str__(self):
        return f"{self.metric_name}.{self.field_name} ({self.node_id})"


def _validate_node(node: NodeSetting, namespace: str, identifier_type: str, where: str):
    if not node.field_name:
        raise ConfigurationError(f"empty name in {where}")
    if not namespace:
        raise ConfigurationError(f"empty namespace for node {node.field_name!r} in {where}")
    if not namespace.isdigit():
        raise ConfigurationError(f"namespace {namespace!r} of node {node.field_name!r} is not a non-negative integer")
    if not identifier_type:
        raise ConfigurationError(f"empty identifier type for node {node.field_name!r} in {where}")
    if identifier_type not in IDENTIFIER_TYPES:
        raise ConfigurationError(
            f"invalid identifier type {identifier_type!r} for node {node.field_name!r}, expected one of {list(IDENTIFIER_TYPES)}")
    if not node.identifier:
        raise ConfigurationError(f"empty identifier for node {node.field_name!r} in {where}")
    if identifier_type == "i":
        if not node.identifier.isdigit() or int(node.identifier) > 0xFFFFFFFF:
            raise ConfigurationError(f"identifier {node.identifier!r} of node {node.field_name!r} is not a valid numeric id")
    elif identifier_type == "g":
        try:
            uuid.UUID(node.identifier)
        except ValueError:
            raise ConfigurationError(f"identifier {node.identifier!r} of node {node.field_name!r} is not a valid GUID") from None


def _make_mapping(node: NodeSetting, metric_name: str, namespace: str, identifier_type: str,
                  group_tags, where: str) -> NodeMetricMapping:
    _validate_node(node, namespace, identifier_type, where)
    tags = merge_tags(node.default_tags, group_tags, node.tags)
    return NodeMetricMapping(
        namespace=namespace,
        identifier_type=identifier_type,
        identifier=node.identifier,
        metric_name=metric_name,
        field_name=node.field_name,
        metric_tags=MappingProxyType(tags),
    )


def build_mappings(root_nodes: Sequence[NodeSetting], groups: Sequence[NodeGroupSettings],
                   metric_name: str = DEFAULT_METRIC_NAME) -> List[NodeMetricMapping]:
    """Flatten root nodes, then group nodes, into NodeMetricMappings."""
    mappings = []
    for node in root_nodes:
        mappings.append(_make_mapping(node, metric_name, node.namespace, node.identifier_type,
                                      None, "root nodes"))

    for group in groups:
        group_metric = group.metric_name or metric_name
        where = f"group {group_metric!r}"
        for node in group.nodes:
            mappings.append(_make_mapping(node, group_metric,
                                          node.namespace or group.namespace,
                                          node.identifier_type or group.identifier_type,
                                          group.tags, where))

    seen = {}
    for mapping in mappings:
        key = (mapping.metric_name, mapping.field_name)
        if key in seen:
            raise ConfigurationError(
                f"name {mapping.field_name!r} is duplicated (metric name {mapping.metric_name!r}, "
                f"nodes {seen[key]} and {mapping.node_id})")
        seen[key] = mapping.node_id

    logging.debug(f"_UAMapping_.build_mappings: Built {len(mappings)} node mappings "
                  f"from {len(root_nodes)} root nodes and {len(groups)} groups")
    return mappings
