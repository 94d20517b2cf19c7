# compile/passes/state_management.py
"""
Rewrite:
    past_k = read_value(...)                  # or a past_key_values.* input
    k_all  = concat([gather(past_k, beam_idx)?, k], axis=2)
    assign(k_all)                             # same for v
    out    = scaled_dot_product_attention(q, k_all, v_all, mask, scale?)
into:
    pa  = paged_attention(flat(q), flat(k), flat(v),
                          key_cache.N, value_cache.N,
                          context_lens, subsequence_begins,
                          block_indices, block_indices_begins,
                          scale, sliding_window, max_context_len)
    out = transpose(reshape(pa, shape_of(transpose(q))))

Context contract:
    reads    model_remaining_params, sliding_window, max_context_len
    appends  kv_parameters, parameters_to_remove, assigns_to_remove,
             results_to_remove
    bumps    layer_index (once per rewritten layer, in discovery order)
"""

import logging
import math

import mlx.core as mx

from graph.ir import GraphIR, OpIR, Shape
from graph.graph_utils import ordered_ops
from graph.naming import set_name
from graph.op_registry import OpKind
from compile.context import RewriteContext
from compile.passes.patterns import match_cache_concat

logger = logging.getLogger(__name__)

SDPA_OP = "scaled_dot_product_attention"

# [batch, heads, seq, head_size] <-> [batch, seq, heads, head_size]
HEADS_TO_TOKENS = (0, 2, 1, 3)


# -----------------------------------------------------------------------------
# Shape helpers
# -----------------------------------------------------------------------------

def _permute(shape: Shape, perm) -> Shape:
    if shape is None or len(shape) != len(perm):
        return None
    return tuple(shape[p] for p in perm)


def _merge(shape: Shape, start: int, end: int) -> Shape:
    if shape is None:
        return None
    dims = shape[start:end + 1]
    merged = None
    if all(d is not None for d in dims):
        merged = math.prod(dims)
    return tuple(shape[:start]) + (merged,) + tuple(shape[end + 1:])


def _flatten_heads(g: GraphIR, tid: int) -> tuple:
    """
    [B, H, S, D] -> [B*S, H*D]. Returns (flattened tid, transposed tid).
    """
    t = g.tensors[tid]
    tr = g.add_op("transpose", [tid], _permute(t.shape, HEADS_TO_TOKENS), t.dtype,
                  attrs={"axes": HEADS_TO_TOKENS})
    tr_shape = g.tensors[tr.outputs[0]].shape

    tokens_shape = _merge(tr_shape, 0, 1)
    tokens = g.add_op("flatten", tr.outputs, tokens_shape, t.dtype,
                      attrs={"start_axis": 0, "end_axis": 1})
    flat = g.add_op("flatten", tokens.outputs, _merge(tokens_shape, 1, 2), t.dtype,
                    attrs={"start_axis": 1, "end_axis": 2})
    return flat.outputs[0], tr.outputs[0]


def _scale(g: GraphIR, sdpa: OpIR, q: int) -> int:
    if len(sdpa.inputs) > 4:
        return sdpa.inputs[4]

    shape = g.tensors[q].shape
    dtype = g.tensors[q].dtype
    head_size = shape[-1] if shape else None
    if head_size is not None:
        return g.make_constant(1.0 / math.sqrt(head_size), dtype).outputs[0]

    # Head size only known at runtime
    shape_of = g.add_op("shape_of", [q], (None,), mx.int64)
    index = g.make_constant(-1, mx.int64)
    axis = g.make_constant(0, mx.int64)
    size = g.add_op("gather", [shape_of.outputs[0], index.outputs[0], axis.outputs[0]], (), mx.int64)
    size = g.add_op("convert", size.outputs, (), dtype, attrs={"dtype": dtype})
    return g.add_op("rsqrt", size.outputs, (), dtype).outputs[0]


# -----------------------------------------------------------------------------
# Bookkeeping
# -----------------------------------------------------------------------------

def _record_obsolete(g: GraphIR, ctx: RewriteContext, concat: OpIR, source: OpIR) -> None:
    if source.as_parameter() is not None and source not in ctx.parameters_to_remove:
        ctx.parameters_to_remove.append(source)

    out = concat.outputs[0]
    for consumer in g.consumers(out):
        if consumer.kind == OpKind.SINK and consumer not in ctx.assigns_to_remove:
            ctx.assigns_to_remove.append(consumer)
    if out in g.outputs and out not in ctx.results_to_remove:
        ctx.results_to_remove.append(out)


def _cache_parameter(g: GraphIR, like: int, name: str) -> OpIR:
    # [num_blocks, kv_heads, block_size, head_size] is owned by the runtime
    return set_name(g, g.make_parameter(g.tensors[like].dtype, None), name)


# -----------------------------------------------------------------------------
# Pass
# -----------------------------------------------------------------------------

def _rewrite_layer(g: GraphIR, ctx: RewriteContext, sdpa: OpIR, k_match, v_match) -> None:
    layer = ctx.layer_index
    k_concat, k_source, k_cur = k_match
    v_concat, v_source, v_cur = v_match
    q = sdpa.inputs[0]

    key_cache = _cache_parameter(g, k_cur, f"key_cache.{layer}")
    value_cache = _cache_parameter(g, v_cur, f"value_cache.{layer}")
    ctx.kv_parameters.extend([key_cache, value_cache])

    _record_obsolete(g, ctx, k_concat, k_source)
    _record_obsolete(g, ctx, v_concat, v_source)

    q_flat, q_tokens = _flatten_heads(g, q)
    k_flat, _ = _flatten_heads(g, k_cur)
    v_flat, _ = _flatten_heads(g, v_cur)

    scale = _scale(g, sdpa, q)

    pa_inputs = [q_flat, k_flat, v_flat, key_cache.outputs[0], value_cache.outputs[0]]
    pa_inputs += [p.outputs[0] for p in ctx.model_remaining_params]
    pa_inputs += [scale, ctx.sliding_window.outputs[0], ctx.max_context_len.outputs[0]]

    q_shape = g.tensors[q_flat].shape
    dtype = g.tensors[q].dtype
    pa = g.add_op("paged_attention", pa_inputs, q_shape, dtype,
                  name=f"paged_attention.{layer}")

    # Back to the layout the SDPA consumers expect
    target = g.add_op("shape_of", [q_tokens], (4,), mx.int64)
    unflat = g.add_op("reshape", [pa.outputs[0], target.outputs[0]],
                      g.tensors[q_tokens].shape, dtype)
    out_tid = sdpa.outputs[0]
    out = g.add_op("transpose", unflat.outputs, g.tensors[out_tid].shape, dtype,
                   attrs={"axes": HEADS_TO_TOKENS})

    g.replace(out_tid, out.outputs[0])
    ctx.layer_index += 1

    logger.debug("Layer %d: %s %r -> paged_attention", layer, sdpa.op, sdpa.name)


def state_management(g: GraphIR, ctx: RewriteContext) -> bool:
    rewritten = 0

    for op in ordered_ops(g):
        if op.op != SDPA_OP:
            continue

        k_match = match_cache_concat(g, op.inputs[1], ctx)
        v_match = match_cache_concat(g, op.inputs[2], ctx)
        if k_match is None or v_match is None:
            logger.debug("Skipping %s %r: key/value are not cache concats", op.op, op.name)
            continue

        _rewrite_layer(g, ctx, op, k_match, v_match)
        rewritten += 1

    return rewritten > 0
