"""
Dependency walks over the preparation graph.

Both helpers are generic: nodes are opaque ids and the caller supplies the
callbacks that know about links, units and costs.
"""

import logging
import math
from collections import deque

logger = logging.getLogger(__name__)

_VISITING = 1
_VISITED = 2


def topological_order(nodes, get_children):
    """
    Orders `nodes` so that every child comes before its parents.

    Iterative DFS with three-colour marking. A back-edge (cycle) is logged and
    dropped instead of aborting: the node that closes the cycle is ordered as
    if it had no unresolved children.

    Returns `(order, back_edges)` where `back_edges` lists `(parent, child)`.
    """
    state = {}
    order = []
    back_edges = []

    for root in nodes:
        if root in state:
            continue
        state[root] = _VISITING
        stack = [(root, iter(get_children(root)))]
        while stack:
            node, children = stack[-1]
            for child in children:
                child_state = state.get(child)
                if child_state is None:
                    state[child] = _VISITING
                    stack.append((child, iter(get_children(child))))
                    break
                if child_state == _VISITING:
                    logger.error(
                        "Circular dependency detected involving preparation %s (via %s); link ignored.",
                        child,
                        node,
                    )
                    back_edges.append((node, child))
            else:
                state[node] = _VISITED
                order.append(node)
                stack.pop()

    return order, back_edges


def creates_cycle(parent_id, child_id, get_children):
    """True when adding the edge parent -> child would close a cycle."""
    if parent_id == child_id:
        return True
    seen = set()
    pending = [child_id]
    while pending:
        node = pending.pop()
        if node == parent_id:
            return True
        if node in seen:
            continue
        seen.add(node)
        pending.extend(get_children(node))
    return False


def expand(seeds, get_children, process):
    """
    Worklist walk scaling quantities down the dependency graph.

    `seeds` yields `(node, multiplier)`. For every dequeued pair,
    `process(node, multiplier)` accumulates whatever the caller needs, then
    `get_children(node, multiplier)` yields `(child, child_multiplier)` pairs
    to enqueue. Shared children are visited once per path so their
    quantities add up. A child already on the current path is a cycle: the
    branch is logged and skipped.
    """
    queue = deque((node, multiplier, (node,)) for node, multiplier in seeds)
    while queue:
        node, multiplier, path = queue.popleft()
        process(node, multiplier)
        for child, child_multiplier in get_children(node, multiplier):
            if child in path:
                logger.warning(
                    "Circular dependency detected: %s -> %s; branch skipped.", node, child
                )
                continue
            if not math.isfinite(child_multiplier) or child_multiplier <= 0:
                continue
            queue.append((child, child_multiplier, path + (child,)))
