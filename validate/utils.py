# validate/utils.py
"""
Builders for small decoder-only graphs in the stateful layout produced by
exporting a transformer with an explicit KV cache.

The graphs are structural: projections use placeholder weights and shapes
are only as precise as the rewrite passes need.
"""

import mlx.core as mx

from graph.ir import GraphIR, OpIR
from graph.naming import set_name

HEADS = 4
KV_HEADS = 2
HEAD_SIZE = 8
HIDDEN = HEADS * HEAD_SIZE
VOCAB = 16
MAX_POSITIONS = 32


def add_input(g: GraphIR, name: str, dtype, shape) -> OpIR:
    param = set_name(g, g.make_parameter(dtype, shape), name)
    g.add_parameters([param])
    return param


def _weight(g: GraphIR, rows: int, cols: int) -> int:
    return g.make_constant([[0.0] * cols] * rows, mx.float32, (rows, cols)).outputs[0]


def _project(g: GraphIR, hidden: int, rope: int, heads: int) -> int:
    proj = g.add_op("matmul", [hidden, _weight(g, HIDDEN, heads * HEAD_SIZE)],
                    (None, heads, None, HEAD_SIZE), mx.float32)
    return g.add_op("multiply", [proj.outputs[0], rope],
                    (None, heads, None, HEAD_SIZE), mx.float32).outputs[0]


def _past(g: GraphIR, layer: int, kind: str, explicit_kv: bool, beam_idx) -> int:
    shape = (None, KV_HEADS, None, HEAD_SIZE)
    if explicit_kv:
        past = add_input(g, f"past_key_values.{layer}.{kind}", mx.float32, shape)
    else:
        variable = f"past_key_values.{layer}.{kind}present.{layer}.{kind}"
        past = g.add_op("read_value", [], shape, mx.float32,
                        attrs={"variable_id": variable}, name=variable)

    tid = past.outputs[0]
    if beam_idx is not None:
        axis = g.make_constant(0, mx.int64)
        tid = g.add_op("gather", [tid, beam_idx.outputs[0], axis.outputs[0]],
                       shape, mx.float32).outputs[0]
    return tid


def _cache_step(g: GraphIR, layer: int, kind: str, current: int, explicit_kv: bool, beam_idx):
    """
    concat(past, current) plus the write-back (assign sink or present.* result).
    Returns (past tid, concat tid).
    """
    past = _past(g, layer, kind, explicit_kv, beam_idx)
    concat = g.add_op("concat", [past, current], (None, KV_HEADS, None, HEAD_SIZE),
                      mx.float32, attrs={"axis": 2})
    out = concat.outputs[0]

    if explicit_kv:
        g.tensors[out].names = {f"present.{layer}.{kind}"}
        g.add_results([out])
    else:
        variable = f"past_key_values.{layer}.{kind}present.{layer}.{kind}"
        g.add_op("assign", [out], None, mx.float32, attrs={"variable_id": variable})
    return past, out


def _seq_dim(g: GraphIR, tid: int) -> OpIR:
    shape_of = g.add_op("shape_of", [tid], (4,), mx.int64)
    index = g.make_constant(2, mx.int64)
    axis = g.make_constant(0, mx.int64)
    return g.add_op("gather", [shape_of.outputs[0], index.outputs[0], axis.outputs[0]],
                    (), mx.int64)


def build_stateful_llm(
    num_layers: int = 2,
    with_position_ids: bool = False,
    with_beam_idx: bool = True,
    explicit_kv: bool = False,
    with_scale: bool = False,
    expose_past_length: bool = False,
) -> GraphIR:
    """
    Decoder with `num_layers` SDPA layers.

    - position ids come from `position_ids` when present, otherwise from
      cumsum(attention_mask) - 1
    - the KV cache is read_value/assign state, or past_key_values.* inputs
      and present.* results when `explicit_kv` is set
    - layer 0 derives the past and total lengths from cache shapes
    """
    g = GraphIR()

    input_ids = add_input(g, "input_ids", mx.int64, (None, None))
    attention_mask = add_input(g, "attention_mask", mx.int64, (None, None))
    position_ids = None
    if with_position_ids:
        position_ids = add_input(g, "position_ids", mx.int64, (None, None))
    beam_idx = None
    if with_beam_idx:
        beam_idx = add_input(g, "beam_idx", mx.int32, (None,))

    # ---- embeddings ----
    table = _weight(g, VOCAB, HIDDEN)
    axis0 = g.make_constant(0, mx.int64)
    hidden = g.add_op("gather", [table, input_ids.outputs[0], axis0.outputs[0]],
                      (None, None, HIDDEN), mx.float32).outputs[0]

    # ---- positions ----
    if position_ids is not None:
        positions = position_ids.outputs[0]
    else:
        mask = g.add_op("convert", attention_mask.outputs, (None, None), mx.int64,
                        attrs={"dtype": mx.int64})
        cumsum = g.add_op("cumsum", mask.outputs, (None, None), mx.int64, attrs={"axis": -1})
        one = g.make_constant(1, mx.int64)
        positions = g.add_op("subtract", [cumsum.outputs[0], one.outputs[0]],
                             (None, None), mx.int64).outputs[0]

    rope_table = _weight(g, MAX_POSITIONS, HEAD_SIZE)
    rope = g.add_op("gather", [rope_table, positions, axis0.outputs[0]],
                    (None, None, HEAD_SIZE), mx.float32).outputs[0]

    causal_mask = None
    for layer in range(num_layers):
        q = _project(g, hidden, rope, HEADS)
        k = _project(g, hidden, rope, KV_HEADS)
        v = _project(g, hidden, rope, KV_HEADS)

        past_k, k_all = _cache_step(g, layer, "key", k, explicit_kv, beam_idx)
        _, v_all = _cache_step(g, layer, "value", v, explicit_kv, beam_idx)

        if causal_mask is None:
            past_len = _seq_dim(g, past_k)
            total_len = _seq_dim(g, k_all)
            causal_mask = g.add_op(
                "causal_mask",
                [attention_mask.outputs[0], past_len.outputs[0], total_len.outputs[0]],
                (None, 1, None, None),
                mx.float32,
            ).outputs[0]
            if expose_past_length:
                g.tensors[past_len.outputs[0]].names = {"past_length"}
                g.add_results(past_len.outputs)

        sdpa_inputs = [q, k_all, v_all, causal_mask]
        if with_scale:
            sdpa_inputs.append(g.make_constant(0.125, mx.float32).outputs[0])
        attn = g.add_op("scaled_dot_product_attention", sdpa_inputs,
                        (None, HEADS, None, HEAD_SIZE), mx.float32,
                        name=f"layer.{layer}.attention")

        proj = g.add_op("matmul", [attn.outputs[0], _weight(g, HIDDEN, HIDDEN)],
                        (None, None, HIDDEN), mx.float32)
        hidden = g.add_op("add", [hidden, proj.outputs[0]],
                          (None, None, HIDDEN), mx.float32).outputs[0]

    logits = g.add_op("matmul", [hidden, _weight(g, HIDDEN, VOCAB)],
                      (None, None, VOCAB), mx.float32)
    g.tensors[logits.outputs[0]].names = {"logits"}
    g.add_results(logits.outputs)
    return g


def ops_named(g: GraphIR, op: str):
    return [o for o in g.ops if o.op == op]
