# compile/passes/position_ids.py
import logging
from typing import List

from graph.ir import GraphIR, OpIR
from graph.graph_utils import constant_value, ordered_ops, trace_source
from compile.context import RewriteContext
from compile.passes.patterns import is_used, replace_with

logger = logging.getLogger(__name__)

ATTENTION_MASK = "attention_mask"


def _reads_attention_mask(g: GraphIR, op: OpIR) -> bool:
    source = trace_source(g, op.inputs[0])
    if source is None or source.as_parameter() is None:
        return False
    return ATTENTION_MASK in g.tensors[source.outputs[0]].names


def _is_one(value) -> bool:
    if isinstance(value, (list, tuple)):
        return len(value) == 1 and _is_one(value[0])
    return value == 1


def _offsets_of(g: GraphIR, cumsum: OpIR) -> List[OpIR]:
    """
    Consumers of the form `cumsum(mask) - 1`, i.e. 0-based positions.
    """
    out = cumsum.outputs[0]
    offsets = []
    for op in g.consumers(out):
        if op.op != "subtract" or op.inputs[0] != out:
            continue
        if _is_one(constant_value(g, op.inputs[1])):
            offsets.append(op)
    return offsets


def _one_based(g: GraphIR, ctx: RewriteContext) -> int:
    """
    position_ids + 1, the value the mask cumsum itself carries.
    """
    pos = g.tensors[ctx.position_ids]
    one = g.make_constant(1, pos.dtype)
    return g.add_op("add", [ctx.position_ids, one.outputs[0]], pos.shape, pos.dtype).outputs[0]


def position_ids(g: GraphIR, ctx: RewriteContext) -> bool:
    """
    Rewrite:
        cumsum(attention_mask, axis=-1) - 1
    into:
        the externally supplied (unsqueezed) position_ids

    Any other use of the cumsum reads position_ids + 1 instead.
    """
    replaced = 0

    for op in ordered_ops(g):
        if op.op != "cumsum" or not _reads_attention_mask(g, op):
            continue

        offsets = _offsets_of(g, op)
        for sub in offsets:
            if is_used(g, sub):
                replace_with(g, sub, ctx.position_ids)
                replaced += 1

        out = op.outputs[0]
        direct = [c for c in g.consumers(out) if not any(c is s for s in offsets)]
        if direct or out in g.outputs:
            replace_with(g, op, _one_based(g, ctx))
            replaced += 1

    logger.debug("Replaced %d derived position-id computations", replaced)
    return replaced > 0
