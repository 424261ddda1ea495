"""Normalization of generated workflow documents before they reach the engine."""

import copy
import re
from typing import Any, Dict, List, Tuple

from .agent_invoker import extract_json
from .exceptions import GraphValidationError
from .logging import get_logger


logger = get_logger(__name__)

_CANONICAL_ID = re.compile(r"^node_(\d+)$")


def extract_graph_document(text: str) -> Dict[str, Any]:
    """
    Pull a ``{nodes, edges}`` document out of model text.

    Raises:
        GraphValidationError: If no JSON object is found or it lacks node/edge lists
    """
    try:
        document = extract_json(text)
    except ValueError as e:
        raise GraphValidationError("Failed to parse workflow JSON from generator output") from e

    if not isinstance(document, dict) or not isinstance(document.get("nodes"), list) \
            or not isinstance(document.get("edges"), list):
        raise GraphValidationError("Invalid workflow format: missing nodes or edges")
    return document


def normalize_graph_document(document: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Give every node a canonical ``node_<n>`` id and fill in editor defaults.

    Nodes whose id does not already have the canonical form are renumbered
    after the highest existing ``node_<n>``. Edges are remapped through the
    resulting id map; edges with a missing endpoint are dropped.

    Args:
        document: Graph document with ``nodes`` and ``edges`` lists; not modified

    Returns:
        The normalized document and the mapping from original to new node ids
    """
    nodes = copy.deepcopy(document.get("nodes") or [])
    edges = copy.deepcopy(document.get("edges") or [])

    next_number = 1
    for node in nodes:
        match = _CANONICAL_ID.match(str(node.get("id") or ""))
        if match:
            next_number = max(next_number, int(match.group(1)) + 1)

    id_map: Dict[str, str] = {}
    processed: List[Dict[str, Any]] = []
    for index, node in enumerate(nodes):
        original_id = node.get("id")
        final_id = original_id
        if not original_id or not _CANONICAL_ID.match(str(original_id)):
            final_id = f"node_{next_number}"
            next_number += 1
            if original_id:
                id_map[str(original_id)] = final_id

        position = node.get("position")
        if not isinstance(position, dict) or not _is_number(position.get("x")) or not _is_number(position.get("y")):
            node["position"] = {"x": 250 + index * 300, "y": 250}

        data = dict(node.get("data") or {})
        node_type = node.get("type") or data.get("nodeType") or "agent"
        default_name = node_type[:1].upper() + node_type[1:]
        node["type"] = node_type
        node["data"] = {
            **data,
            "nodeType": data.get("nodeType") or node_type,
            "nodeName": data.get("nodeName") or data.get("name") or default_name,
            "label": data.get("label") or data.get("nodeName") or data.get("name") or default_name,
        }
        node["id"] = final_id
        processed.append(node)

    valid_ids = {node["id"] for node in processed}
    processed_edges = []
    for edge in edges:
        source, target = edge.get("source"), edge.get("target")
        if not source or not target:
            logger.warning(f"Skipping invalid edge missing source/target: {edge}")
            continue

        mapped_source = id_map.get(source, source)
        mapped_target = id_map.get(target, target)
        if mapped_source not in valid_ids:
            logger.warning(f"Skipping edge: source node '{mapped_source}' (original: '{source}') does not exist")
            continue
        if mapped_target not in valid_ids:
            logger.warning(f"Skipping edge: target node '{mapped_target}' (original: '{target}') does not exist")
            continue

        normalized = {
            "id": edge.get("id") or f"edge-{mapped_source}-{mapped_target}",
            "source": mapped_source,
            "target": mapped_target,
        }
        for key in ("label", "sourceHandle", "targetHandle"):
            if edge.get(key):
                normalized[key] = edge[key]
        processed_edges.append(normalized)

    if id_map:
        logger.info(f"Node ID mappings: {id_map}")
    logger.info(f"Workflow normalized: {len(processed)} nodes, {len(processed_edges)} edges")

    return {**document, "nodes": processed, "edges": processed_edges}, id_map


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
