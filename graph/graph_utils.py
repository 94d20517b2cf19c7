# graph/graph_utils.py

import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set

from graph.ir import GraphIR, OpIR
from graph.op_registry import TRANSPARENT, is_sink

logger = logging.getLogger(__name__)


class GraphValidationError(Exception):
    """Raised when a graph fails structural validation."""
    pass


def build_producer_map(g: GraphIR) -> Dict[int, int]:
    """
    tid -> producing op index
    """
    prod = {}
    for i, op in enumerate(g.ops):
        for tid in op.outputs:
            prod[tid] = i
    return prod


def build_consumer_map(g: GraphIR) -> Dict[int, List[int]]:
    """
    tid -> list of consuming op indices
    """
    cons = defaultdict(list)
    for i, op in enumerate(g.ops):
        for tid in op.inputs:
            cons[tid].append(i)
    return cons


def build_op_consumers(g: GraphIR) -> Dict[int, Set[int]]:
    """
    op index -> set of op indices that consume its outputs
    """
    prod = build_producer_map(g)
    cons = build_consumer_map(g)

    op_cons = defaultdict(set)
    for tid, producer in prod.items():
        for c in cons.get(tid, []):
            op_cons[producer].add(c)
    return op_cons


def toposort_ops(g: GraphIR) -> List[int]:
    """
    Topologically sort ops using Kahn's algorithm.

    Ties are broken by position in g.ops, so the order is deterministic.
    """
    indeg = [0] * len(g.ops)
    op_cons = build_op_consumers(g)

    for u, vs in op_cons.items():
        for v in vs:
            indeg[v] += 1

    q = deque([i for i, d in enumerate(indeg) if d == 0])
    order = []

    while q:
        u = q.popleft()
        order.append(u)
        for v in sorted(op_cons.get(u, [])):
            indeg[v] -= 1
            if indeg[v] == 0:
                q.append(v)

    assert len(order) == len(g.ops), "Graph has cycles"
    return order


def ordered_ops(g: GraphIR) -> List[OpIR]:
    return [g.ops[i] for i in toposort_ops(g)]


def ancestors(g: GraphIR, tids: Iterable[int]) -> Set[int]:
    """
    Indices of every op needed to compute `tids`.
    """
    prod = build_producer_map(g)
    needed: Set[int] = set()
    stack = [prod[t] for t in tids if t in prod]

    while stack:
        i = stack.pop()
        if i in needed:
            continue
        needed.add(i)
        for tid in g.ops[i].inputs:
            if tid in prod:
                stack.append(prod[tid])
    return needed


def live_ops(g: GraphIR) -> Set[int]:
    """
    Ops reachable backwards from results, sinks and declared inputs.
    """
    prod = build_producer_map(g)
    roots = list(g.outputs) + list(g.inputs)
    for op in g.ops:
        if is_sink(op.op):
            roots.extend(op.inputs)

    live = ancestors(g, roots)
    for i, op in enumerate(g.ops):
        if is_sink(op.op):
            live.add(i)
    for tid in g.inputs:
        if tid in prod:
            live.add(prod[tid])
    return live


def eliminate_dead_ops(g: GraphIR) -> int:
    """
    Drop ops whose values can no longer reach a result or a sink, together
    with the tensors they produced. Returns the number of ops removed.
    """
    live = live_ops(g)
    dead = [op for i, op in enumerate(g.ops) if i not in live]
    if not dead:
        return 0

    g.ops = [op for i, op in enumerate(g.ops) if i in live]
    for op in dead:
        for tid in op.outputs:
            g.tensors.pop(tid, None)

    logger.debug("Eliminated %d dead ops", len(dead))
    return len(dead)


def trace_source(g: GraphIR, tid: int, through: Iterable[str] = ()) -> Optional[OpIR]:
    """
    Follow tid upwards through value-preserving ops (converts, plus any op
    named in `through`) and return the first op that is not one of them.
    """
    skip = TRANSPARENT | set(through)
    op = g.producer(tid)
    while op is not None and op.op in skip and op.inputs:
        op = g.producer(op.inputs[0])
    return op


def constant_value(g: GraphIR, tid: int):
    """
    Literal value of a constant tensor, or None when tid is not a constant.
    """
    op = g.producer(tid)
    if op is None or op.op != "constant":
        return None
    return op.attrs.get("value")


def validate_graph(g: GraphIR) -> None:
    """
    Structural validation.

    - every op input is produced by an op in the graph
    - every tensor has at most one producer
    - the graph is acyclic
    - inputs and results refer to produced tensors
    - input names are unique
    """
    produced: Set[int] = set()
    for op in g.ops:
        for tid in op.outputs:
            if tid in produced:
                raise GraphValidationError(f"Tensor {tid} has more than one producer")
            produced.add(tid)

    for op in g.ops:
        for tid in op.inputs:
            if tid not in produced:
                raise GraphValidationError(
                    f"{op.op} op {op.name!r} reads tensor {tid} with no producer"
                )

    for tid in list(g.inputs) + list(g.outputs):
        if tid not in produced:
            raise GraphValidationError(f"Graph boundary tensor {tid} has no producer")

    seen: Set[str] = set()
    for tid in g.inputs:
        for name in g.tensors[tid].names:
            if name in seen:
                raise GraphValidationError(f"Duplicate input name {name!r}")
            seen.add(name)

    try:
        toposort_ops(g)
    except AssertionError as e:
        raise GraphValidationError(str(e)) from e
