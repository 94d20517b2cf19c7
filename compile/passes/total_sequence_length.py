# compile/passes/total_sequence_length.py
import logging

from graph.ir import GraphIR
from graph.graph_utils import ordered_ops
from compile.context import RewriteContext
from compile.passes.patterns import (
    KV_SEQUENCE_AXIS,
    is_used,
    match_cache_concat,
    match_shape_dim,
    replace_with,
)

logger = logging.getLogger(__name__)


def total_sequence_length(g: GraphIR, ctx: RewriteContext) -> bool:
    """
    Rewrite:
        gather(shape_of(concat(past_kv, kv)), 2, axis=0)
    into:
        max_context_len
    """
    replaced = 0
    max_context_len = ctx.max_context_len.outputs[0]

    for op in ordered_ops(g):
        shape_op = match_shape_dim(g, op, KV_SEQUENCE_AXIS)
        if shape_op is None or not is_used(g, op):
            continue
        if match_cache_concat(g, shape_op.inputs[0], ctx) is None:
            continue

        replace_with(g, op, max_context_len)
        replaced += 1

    logger.debug("Replaced %d total-sequence-length computations", replaced)
    return replaced > 0
