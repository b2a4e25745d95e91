"""Validation logic for pipeline graphs.

This module implements the checks run before a pipeline graph is built, so
that miswired pipelines fail at assembly time instead of dropping events at
runtime.

Validation Rules:
    1. Node IDs are unique
    2. All edge endpoints exist
    3. No edge connects a node to itself
    4. No duplicate edges
    5. No cycles
    6. Every edge connects overlapping output and input types
    7. Every node declares at least one compute type
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docchain.pipeline.graph import PipelineEdge
    from docchain.pipeline.middleware import Middleware


@dataclass(frozen=True)
class GraphValidationError:
    """An error found during graph validation.

    Attributes:
        rule: Error code identifying the validation rule that failed
        message: Human-readable description of the error
        node_id: ID of the node involved (if applicable)
        edge_index: Index of the edge involved (if applicable)
    """

    rule: str
    message: str
    node_id: str | None = None
    edge_index: int | None = None


def validate_graph(nodes: Sequence[Middleware], edges: Sequence[PipelineEdge]) -> list[GraphValidationError]:
    """Validate a pipeline graph and return any errors.

    Args:
        nodes: Nodes of the graph
        edges: Producer → consumer connections

    Returns:
        List of validation errors (empty if valid)
    """
    errors: list[GraphValidationError] = []

    # Rule 1: Node IDs must be unique
    by_id: dict[str, Middleware] = {}
    for node in nodes:
        if node.node_id in by_id:
            errors.append(
                GraphValidationError(
                    rule="duplicate_node_id",
                    message=f"Duplicate node ID: {node.node_id}",
                    node_id=node.node_id,
                )
            )
        else:
            by_id[node.node_id] = node

    # Rule 7: Every node declares a compute type
    for node in by_id.values():
        if not node.capabilities.compute_types:
            errors.append(
                GraphValidationError(
                    rule="no_compute_types",
                    message=f"Node declares no compute types: {node.node_id}",
                    node_id=node.node_id,
                )
            )

    adjacency: dict[str, list[str]] = defaultdict(list)
    seen_edges: set[tuple[str, str]] = set()
    for i, edge in enumerate(edges):
        # Rule 2: All edge endpoints exist
        endpoints_known = True
        for role, node_id in (("producer", edge.producer), ("consumer", edge.consumer)):
            if node_id not in by_id:
                endpoints_known = False
                errors.append(
                    GraphValidationError(
                        rule=f"unknown_{role}",
                        message=f"Edge references non-existent {role}: {node_id}",
                        edge_index=i,
                    )
                )

        # Rule 3: No self-loops
        if edge.producer == edge.consumer:
            errors.append(
                GraphValidationError(
                    rule="self_loop",
                    message=f"Node cannot consume its own events: {edge.producer}",
                    node_id=edge.producer,
                    edge_index=i,
                )
            )
            continue

        # Rule 4: No duplicate edges
        key = (edge.producer, edge.consumer)
        if key in seen_edges:
            errors.append(
                GraphValidationError(
                    rule="duplicate_edge",
                    message=f"Duplicate edge: {edge.producer} -> {edge.consumer}",
                    edge_index=i,
                )
            )
            continue
        seen_edges.add(key)
        adjacency[edge.producer].append(edge.consumer)

        # Rule 6: Connected nodes must share a content type
        if endpoints_known:
            producer = by_id[edge.producer].capabilities
            consumer = by_id[edge.consumer].capabilities
            if not producer.is_compatible_with(consumer):
                errors.append(
                    GraphValidationError(
                        rule="incompatible_nodes",
                        message=(
                            f"Outputs of {edge.producer} {sorted(producer.output_types)} do not overlap "
                            f"inputs of {edge.consumer} {sorted(consumer.input_types)}"
                        ),
                        node_id=edge.consumer,
                        edge_index=i,
                    )
                )

    # Rule 5: No cycles
    cycle_node = _find_cycle(list(by_id), adjacency)
    if cycle_node:
        errors.append(
            GraphValidationError(
                rule="cycle_detected",
                message=f"Cycle detected involving node: {cycle_node}",
                node_id=cycle_node,
            )
        )

    return errors


def _find_cycle(node_ids: list[str], adjacency: dict[str, list[str]]) -> str | None:
    """Detect if there's a cycle in the graph using DFS.

    Args:
        node_ids: IDs of the nodes in the graph
        adjacency: Adjacency list (node -> list of neighbors)

    Returns:
        ID of a node involved in the cycle, or None if no cycle exists
    """
    # Track visit state: 0=unvisited, 1=visiting (in current path), 2=visited
    state: dict[str, int] = dict.fromkeys(node_ids, 0)

    def dfs(node_id: str) -> str | None:
        if state.get(node_id, 0) == 1:
            # Found a back edge - cycle detected
            return node_id
        if state.get(node_id, 0) == 2:
            return None

        state[node_id] = 1

        for neighbor in adjacency.get(node_id, []):
            result = dfs(neighbor)
            if result:
                return result

        state[node_id] = 2
        return None

    for node_id in node_ids:
        if state.get(node_id, 0) == 0:
            result = dfs(node_id)
            if result:
                return result

    return None


__all__ = [
    "GraphValidationError",
    "validate_graph",
]
