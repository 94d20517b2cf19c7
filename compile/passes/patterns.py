# compile/passes/patterns.py
"""
Small structural matchers shared by the paged-attention rewrite passes.
"""

from typing import Optional

from graph.ir import GraphIR, OpIR
from graph.graph_utils import constant_value
from graph.op_registry import TRANSPARENT
from compile.context import RewriteContext

# Layout of KV tensors: [batch, kv_heads, sequence, head_size]
KV_SEQUENCE_AXIS = 2

PAST_KV_PREFIX = "past_key_values"


def _scalar(value):
    if isinstance(value, (list, tuple)):
        return value[0] if len(value) == 1 else None
    return value


def is_beam_reorder(g: GraphIR, op: Optional[OpIR]) -> bool:
    """
    gather(cache, beam_idx, axis=0): reorders cached sequences between steps.
    """
    if op is None or op.op != "gather" or len(op.inputs) != 3:
        return False
    return _scalar(constant_value(g, op.inputs[2])) == 0 and constant_value(g, op.inputs[1]) is None


def kv_source(g: GraphIR, tid: int, ctx: Optional[RewriteContext] = None) -> Optional[OpIR]:
    """
    The read_value / past-cache parameter that `tid` is a view of, or None.

    Walks up through converts and beam reorders.
    """
    op = g.producer(tid)
    while op is not None:
        if op.op in TRANSPARENT or is_beam_reorder(g, op):
            op = g.producer(op.inputs[0])
            continue
        break

    if op is None:
        return None
    if op.op == "read_value":
        return op
    if op.as_parameter() is not None:
        if ctx is not None and ctx.is_removed_parameter(op):
            return op
        names = g.tensors[op.outputs[0]].names | {op.name or ""}
        if any(n.startswith(PAST_KV_PREFIX) for n in names):
            return op
    return None


def match_cache_concat(g: GraphIR, tid: int, ctx: Optional[RewriteContext] = None):
    """
    Match concat(past, current) with past a KV source.

    Returns (concat_op, source_op, current_tid) or None.
    """
    op = g.producer(tid)
    if op is None or op.op != "concat" or len(op.inputs) != 2:
        return None
    source = kv_source(g, op.inputs[0], ctx)
    if source is None:
        return None
    return op, source, op.inputs[1]


def match_shape_dim(g: GraphIR, op: OpIR, axis: int) -> Optional[OpIR]:
    """
    Match gather(shape_of(x), axis, 0) and return the shape_of op.
    """
    if op.op != "gather" or len(op.inputs) != 3:
        return None
    if _scalar(constant_value(g, op.inputs[1])) != axis:
        return None
    if _scalar(constant_value(g, op.inputs[2])) != 0:
        return None
    shape_op = g.producer(op.inputs[0])
    if shape_op is None or shape_op.op != "shape_of":
        return None
    return shape_op


def is_used(g: GraphIR, op: OpIR) -> bool:
    tid = op.outputs[0]
    return tid in g.outputs or bool(g.consumers(tid))


def replace_with(g: GraphIR, old: OpIR, new_tid: int) -> None:
    """
    Rewire consumers of old's output to new_tid, inserting a convert when
    the element types differ.
    """
    old_tid = old.outputs[0]
    want = g.tensors[old_tid].dtype
    if g.tensors[new_tid].dtype != want:
        conv = g.add_op("convert", [new_tid], g.tensors[new_tid].shape, want,
                        attrs={"dtype": want})
        new_tid = conv.outputs[0]
    g.replace(old_tid, new_tid)
