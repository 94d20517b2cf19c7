# compile/passes/prev_sequence_length.py
import logging

from graph.ir import GraphIR
from graph.graph_utils import ordered_ops
from compile.context import RewriteContext
from compile.passes.patterns import (
    KV_SEQUENCE_AXIS,
    is_used,
    kv_source,
    match_shape_dim,
    replace_with,
)

logger = logging.getLogger(__name__)


def prev_sequence_length(g: GraphIR, ctx: RewriteContext) -> bool:
    """
    Rewrite:
        gather(shape_of(past_kv), 2, axis=0)
    into:
        ctx.prev_max_seq_len

    past_kv is anything kv_source() accepts, so caches that state
    management already marked for removal are matched as well.
    """
    replaced = 0

    for op in ordered_ops(g):
        shape_op = match_shape_dim(g, op, KV_SEQUENCE_AXIS)
        if shape_op is None or not is_used(g, op):
            continue
        if kv_source(g, shape_op.inputs[0], ctx) is None:
            continue

        replace_with(g, op, ctx.prev_max_seq_len)
        replaced += 1

    logger.debug("Replaced %d previous-sequence-length computations", replaced)
    return replaced > 0
