# validate/test_graph_utils.py

import pytest
import mlx.core as mx

from graph.ir import GraphIR
from graph.graph_utils import (
    GraphValidationError,
    constant_value,
    eliminate_dead_ops,
    ordered_ops,
    toposort_ops,
    trace_source,
    validate_graph,
)
from validate.utils import add_input


def _chain():
    g = GraphIR()
    x = add_input(g, "x", mx.float32, (None,))
    a = g.add_op("exp", x.outputs, (None,), mx.float32)
    b = g.add_op("rsqrt", a.outputs, (None,), mx.float32)
    g.add_results(b.outputs)
    return g, x, a, b


def test_toposort_respects_dependencies_not_list_order():
    g, x, a, b = _chain()
    # producer listed after consumer
    g.ops = [b, a, x]

    order = ordered_ops(g)
    assert order.index(x) < order.index(a) < order.index(b)


def test_toposort_detects_cycles():
    g, x, a, b = _chain()
    a.inputs = list(b.outputs)

    with pytest.raises(AssertionError):
        toposort_ops(g)


def test_dead_ops_are_eliminated():
    g, x, a, b = _chain()
    dead = g.add_op("multiply", [a.outputs[0], a.outputs[0]], (None,), mx.float32)

    removed = eliminate_dead_ops(g)

    assert removed == 1
    assert dead not in g.ops
    assert dead.outputs[0] not in g.tensors


def test_tensor_ids_are_not_reused_after_elimination():
    g, x, a, b = _chain()
    dead = g.add_op("multiply", [b.outputs[0], b.outputs[0]], (None,), mx.float32)
    freed = dead.outputs[0]

    eliminate_dead_ops(g)
    fresh = g.add_op("exp", b.outputs, (None,), mx.float32)

    assert freed not in g.tensors
    assert fresh.outputs[0] != freed
    assert fresh.outputs[0] > freed


def test_sinks_keep_their_inputs_alive():
    g, x, a, b = _chain()
    rv = g.add_op("read_value", [], (None,), mx.float32)
    total = g.add_op("add", [rv.outputs[0], a.outputs[0]], (None,), mx.float32)
    g.add_op("assign", total.outputs, None, mx.float32)

    assert eliminate_dead_ops(g) == 0

    g.remove_sink(g.sinks[0])
    assert eliminate_dead_ops(g) == 2
    assert rv not in g.ops


def test_unconsumed_inputs_stay():
    g = GraphIR()
    p = add_input(g, "position_ids", mx.int64, (None,))

    assert eliminate_dead_ops(g) == 0
    assert p in g.ops


def test_trace_source_skips_converts():
    g = GraphIR()
    mask = add_input(g, "attention_mask", mx.int64, (None, None))
    conv = g.add_op("convert", mask.outputs, (None, None), mx.int32, attrs={"dtype": mx.int32})
    conv2 = g.add_op("convert", conv.outputs, (None, None), mx.int64, attrs={"dtype": mx.int64})

    assert trace_source(g, conv2.outputs[0]) is mask


def test_constant_value():
    g = GraphIR()
    c = g.make_constant(2, mx.int64)
    x = add_input(g, "x", mx.int64, ())

    assert constant_value(g, c.outputs[0]) == 2
    assert constant_value(g, x.outputs[0]) is None


# -------------------------------------------------
# Validation
# -------------------------------------------------

def test_valid_graph_passes():
    g, *_ = _chain()
    validate_graph(g)


def test_dangling_input_fails_validation():
    g, x, a, b = _chain()
    b.inputs = [1234]

    with pytest.raises(GraphValidationError):
        validate_graph(g)


def test_duplicate_input_names_fail_validation():
    g = GraphIR()
    add_input(g, "input_ids", mx.int64, (None,))
    add_input(g, "input_ids", mx.int64, (None,))

    with pytest.raises(GraphValidationError):
        validate_graph(g)


def test_cycle_fails_validation():
    g, x, a, b = _chain()
    a.inputs = list(b.outputs)

    with pytest.raises(GraphValidationError):
        validate_graph(g)
