# compile/passes/sdpa_to_paged_attention.py
"""
Stateful SDPA model -> stateless paged-attention model.

Phases:
  1. Create the paging inputs (max_context_len + four metadata inputs)
  2. Flatten input_ids / position_ids into one ragged token axis
  3. Build the shared sequence-length expressions
  4. Run the rewrite passes over one RewriteContext
  5. Drop obsolete inputs, sinks and results
  6. Register the new inputs

The graph is mutated in place. A False result means a required control
input was missing; the graph is NOT rolled back and should be discarded.
"""

import logging
from typing import Tuple

import mlx.core as mx

from graph.ir import GraphIR, OpIR
from graph.graph_utils import eliminate_dead_ops
from graph.naming import set_name
from compile.context import RewriteContext
from compile.pipeline import PassManager
from compile.passes.state_management import state_management
from compile.passes.prev_sequence_length import prev_sequence_length
from compile.passes.total_sequence_length import total_sequence_length
from compile.passes.position_ids import position_ids as position_ids_pass

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Input names and types
# -----------------------------------------------------------------------------

INPUT_IDS = "input_ids"
POSITION_IDS = "position_ids"
ATTENTION_MASK = "attention_mask"
BEAM_IDX = "beam_idx"

MAX_CONTEXT_LEN = "max_context_len"
PAGING_INPUTS = (
    "context_lens",
    "subsequence_begins",
    "block_indices",
    "block_indices_begins",
)

PAGING_DTYPE = mx.int32
POSITION_IDS_DTYPE = mx.int64

# Tokens of every sequence share one ragged axis; the new unit axis stands
# in for the old sequence axis.
EXPANDED_AXIS = 1


# -----------------------------------------------------------------------------
# Graph construction helpers
# -----------------------------------------------------------------------------

def _new_input(g: GraphIR, name: str, dtype, shape) -> OpIR:
    return set_name(g, g.make_parameter(dtype, shape), name)


def _unsqueeze_and_rewire(g: GraphIR, param: OpIR) -> OpIR:
    """
    Insert unsqueeze(param, 1) and move every consumer of param onto it.
    """
    src = g.tensors[param.outputs[0]]
    axis = g.make_constant(EXPANDED_AXIS, mx.int32)
    shape = None
    if src.shape is not None:
        shape = src.shape[:EXPANDED_AXIS] + (1,) + src.shape[EXPANDED_AXIS:]
    unsqueezed = g.add_op(
        "unsqueeze",
        [param.outputs[0], axis.outputs[0]],
        shape,
        src.dtype,
    )
    g.replace(param.outputs[0], unsqueezed.outputs[0], exclude=[unsqueezed])
    return unsqueezed


def build_sequence_lengths(g: GraphIR, unsqueezed_input_ids: OpIR, max_context_len: OpIR) -> Tuple[int, int]:
    """
    cur_seq_len      = shape_of(input_ids')[1]
    prev_max_seq_len = max_context_len - i32(cur_seq_len)

    Returns (cur_seq_len, prev_max_seq_len) tensor ids.
    """
    shape_of = g.add_op("shape_of", unsqueezed_input_ids.outputs, (2,), mx.int64)
    index = g.make_constant(EXPANDED_AXIS, mx.int64)
    axis = g.make_constant(0, mx.int64)
    cur_seq_len = g.add_op(
        "gather",
        [shape_of.outputs[0], index.outputs[0], axis.outputs[0]],
        (),
        mx.int64,
    )

    cur_seq_len_i32 = g.add_op("convert", cur_seq_len.outputs, (), PAGING_DTYPE,
                               attrs={"dtype": PAGING_DTYPE})
    prev_max_seq_len = g.add_op(
        "subtract",
        [max_context_len.outputs[0], cur_seq_len_i32.outputs[0]],
        (),
        PAGING_DTYPE,
    )
    return cur_seq_len.outputs[0], prev_max_seq_len.outputs[0]


def _position_ids_input(g: GraphIR) -> OpIR:
    if not g.has_input(POSITION_IDS):
        param = _new_input(g, POSITION_IDS, POSITION_IDS_DTYPE, (None,))
        g.add_parameters([param])
        return param

    param = g.input(POSITION_IDS)
    g.set_partial_shape(param, (None,))
    return param


# -----------------------------------------------------------------------------
# Cleanup
# -----------------------------------------------------------------------------

def purge_state_sinks(g: GraphIR) -> int:
    """
    Aggressive state-sink purge.

    Every sink left after the state-management rewrite is treated as dead
    recurrence machinery and removed without checking it individually. The
    path from a cache concat to its assign can be arbitrarily long, so this
    is a known over-approximation, not a proof.
    """
    sinks = g.sinks
    for sink in sinks:
        g.remove_sink(sink)
    return len(sinks)


def _remove_control_inputs(g: GraphIR) -> bool:
    if g.has_input(BEAM_IDX):
        node = g.input(BEAM_IDX)
        param = node.as_parameter() if node is not None else None
        if param is None:
            logger.warning("%s is not a parameter; aborting", BEAM_IDX)
            return False
        g.remove_parameter(param)

    node = g.input(ATTENTION_MASK)
    param = node.as_parameter() if node is not None else None
    if param is None:
        logger.warning("%s parameter not found; aborting", ATTENTION_MASK)
        return False
    g.remove_parameter(param)
    return True


def _warn_orphans(g: GraphIR, removed) -> None:
    for param in removed:
        if g.consumers(param.outputs[0]):
            logger.warning("Removed input %r is still consumed", param.name)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def prepare_inputs(g: GraphIR) -> RewriteContext:
    """
    Phases 1-3: create the paging inputs, flatten input_ids / position_ids
    and build the shared expressions. Returns the context the passes share.
    """
    # ------------------------------------------------------------------
    # 1. Paging inputs
    # ------------------------------------------------------------------
    max_context_len = _new_input(g, MAX_CONTEXT_LEN, PAGING_DTYPE, ())
    model_remaining_params = [
        _new_input(g, name, PAGING_DTYPE, (None,)) for name in PAGING_INPUTS
    ]
    # Reserved; no sliding-window semantics yet
    sliding_window = g.make_constant(0, PAGING_DTYPE)

    # ------------------------------------------------------------------
    # 2. input_ids: caller guarantees it is a parameter
    # ------------------------------------------------------------------
    input_ids = g.input(INPUT_IDS).as_parameter()
    g.set_partial_shape(input_ids, (None,))
    unsqueezed_input_ids = _unsqueeze_and_rewire(g, input_ids)

    # ------------------------------------------------------------------
    # 3. Shared sequence lengths and position ids
    # ------------------------------------------------------------------
    cur_seq_len, prev_max_seq_len = build_sequence_lengths(g, unsqueezed_input_ids, max_context_len)

    position_ids = _position_ids_input(g)
    unsqueezed_position_ids = _unsqueeze_and_rewire(g, position_ids)

    ctx = RewriteContext(
        model_remaining_params=model_remaining_params,
        max_context_len=max_context_len,
        sliding_window=sliding_window,
        cur_seq_len=cur_seq_len,
        prev_max_seq_len=prev_max_seq_len,
        position_ids=unsqueezed_position_ids.outputs[0],
    )
    return ctx


def sdpa_to_paged_attention(g: GraphIR) -> bool:
    ctx = prepare_inputs(g)

    # ------------------------------------------------------------------
    # 4. Rewrite passes (order matters: 2-4 rely on shapes from 1)
    # ------------------------------------------------------------------
    manager = PassManager(per_pass_validation=False)
    manager.register_pass(state_management)
    manager.register_pass(prev_sequence_length)
    manager.register_pass(total_sequence_length)
    manager.register_pass(position_ids_pass)
    manager.run_passes(g, ctx)

    # ------------------------------------------------------------------
    # 5. Cleanup
    # ------------------------------------------------------------------
    if not _remove_control_inputs(g):
        return False

    for param in ctx.parameters_to_remove:
        g.remove_parameter(param)

    n_sinks = purge_state_sinks(g)

    for tid in ctx.results_to_remove:
        if tid in g.outputs:
            g.remove_result(tid)

    # ------------------------------------------------------------------
    # 6. Final inputs
    # ------------------------------------------------------------------
    g.add_parameters(ctx.kv_parameters)
    g.add_parameters(ctx.model_remaining_params)
    g.add_parameters([ctx.max_context_len])

    eliminate_dead_ops(g)
    _warn_orphans(g, ctx.parameters_to_remove)

    logger.info(
        "Converted %d attention layers to paged attention; removed %d sinks; %s",
        ctx.layer_index, n_sinks, ctx.summary(),
    )
    return True
