# validate/test_sdpa_to_paged_attention.py
"""
End-to-end tests for the stateful SDPA -> paged attention conversion.

Checks:
- final input list (names, order, dtypes, shapes)
- removal of control inputs, caches, sinks and present.* results
- failure paths for attention_mask / beam_idx
- the shared sequence-length expressions, structurally and numerically
"""

import logging

import pytest
import mlx.core as mx

from graph.graph_utils import validate_graph
from compile.passes.sdpa_to_paged_attention import sdpa_to_paged_attention
from runtime.execute import run_graph
from validate.utils import build_stateful_llm, ops_named

PAGING = ["context_lens", "subsequence_begins", "block_indices", "block_indices_begins"]


def _expected_inputs(num_layers):
    kv = []
    for layer in range(num_layers):
        kv += [f"key_cache.{layer}", f"value_cache.{layer}"]
    return ["input_ids", "position_ids"] + kv + PAGING + ["max_context_len"]


# -------------------------------------------------
# Successful conversion
# -------------------------------------------------

def test_two_layer_scenario():
    g = build_stateful_llm(num_layers=2, with_position_ids=False, with_beam_idx=False)

    assert sdpa_to_paged_attention(g)

    assert g.input_names() == _expected_inputs(2)
    assert len(g.inputs) == 11
    assert not g.has_input("attention_mask")
    assert not g.has_input("beam_idx")


@pytest.mark.parametrize("num_layers", [1, 3, 5])
@pytest.mark.parametrize("with_position_ids", [False, True])
@pytest.mark.parametrize("with_beam_idx", [False, True])
def test_input_set_depends_only_on_layer_count(num_layers, with_position_ids, with_beam_idx):
    g = build_stateful_llm(
        num_layers=num_layers,
        with_position_ids=with_position_ids,
        with_beam_idx=with_beam_idx,
    )

    assert sdpa_to_paged_attention(g)
    assert g.input_names() == _expected_inputs(num_layers)


def test_no_sinks_remain():
    g = build_stateful_llm(num_layers=3)
    assert len(g.sinks) == 6

    assert sdpa_to_paged_attention(g)

    assert g.sinks == []
    assert ops_named(g, "read_value") == []
    assert ops_named(g, "scaled_dot_product_attention") == []
    assert len(ops_named(g, "paged_attention")) == 3


def test_unrelated_state_sinks_are_purged():
    g = build_stateful_llm(num_layers=2)
    counter = g.add_op("read_value", [], (1,), mx.int64, attrs={"variable_id": "step"})
    g.add_op("assign", counter.outputs, None, mx.int64, attrs={"variable_id": "step"})
    assert len(g.sinks) == 5

    assert sdpa_to_paged_attention(g)

    assert g.sinks == []
    assert counter not in g.ops


def test_result_graph_is_structurally_valid():
    g = build_stateful_llm(num_layers=2)
    assert sdpa_to_paged_attention(g)

    validate_graph(g)
    for param in g.parameters:
        assert param.as_parameter() is param


def test_new_input_types_and_shapes():
    g = build_stateful_llm(num_layers=1)
    assert sdpa_to_paged_attention(g)

    def tensor(name):
        return g.tensors[g.input(name).outputs[0]]

    assert tensor("max_context_len").dtype == mx.int32
    assert tensor("max_context_len").shape == ()
    for name in PAGING:
        assert tensor(name).dtype == mx.int32
        assert tensor(name).shape == (None,)
        assert g.input(name).name == name

    assert tensor("input_ids").shape == (None,)
    assert tensor("position_ids").shape == (None,)
    assert tensor("position_ids").dtype == mx.int64


def test_existing_position_ids_is_reused():
    g = build_stateful_llm(num_layers=1, with_position_ids=True)
    original = g.input("position_ids")

    assert sdpa_to_paged_attention(g)

    assert g.input("position_ids") is original
    assert g.tensors[original.outputs[0]].shape == (None,)
    assert g.input_names().count("position_ids") == 1


def test_input_ids_consumers_read_unsqueezed_tensor():
    g = build_stateful_llm(num_layers=1)
    assert sdpa_to_paged_attention(g)

    input_ids = g.input("input_ids")
    consumers = g.consumers(input_ids.outputs[0])
    assert [op.op for op in consumers] == ["unsqueeze"]
    assert g.tensors[consumers[0].outputs[0]].shape == (None, 1)

    position_ids = g.input("position_ids")
    assert [op.op for op in g.consumers(position_ids.outputs[0])] == ["unsqueeze"]


def test_explicit_cache_model():
    g = build_stateful_llm(num_layers=2, explicit_kv=True)

    assert sdpa_to_paged_attention(g)

    names = g.input_names()
    assert names == _expected_inputs(2)
    assert not any(n.startswith("past_key_values") for n in names)
    result_names = set()
    for tid in g.outputs:
        result_names |= g.tensors[tid].names
    assert result_names == {"logits"}


def test_sliding_window_is_zero_constant():
    g = build_stateful_llm(num_layers=2)
    assert sdpa_to_paged_attention(g)

    for pa in ops_named(g, "paged_attention"):
        window = g.producer(pa.inputs[10])
        assert window.op == "constant"
        assert window.attrs["value"] == 0


def test_success_is_logged(caplog):
    g = build_stateful_llm(num_layers=2)

    with caplog.at_level(logging.INFO, logger="compile.passes.sdpa_to_paged_attention"):
        assert sdpa_to_paged_attention(g)

    assert "Converted 2 attention layers" in caplog.text


# -------------------------------------------------
# Failure paths
# -------------------------------------------------

def test_missing_attention_mask_fails():
    g = build_stateful_llm(num_layers=2, with_beam_idx=False)
    g.remove_parameter(g.input("attention_mask"))

    assert not sdpa_to_paged_attention(g)


def test_non_parameter_beam_idx_fails_before_removal():
    g = build_stateful_llm(num_layers=2, with_beam_idx=False)
    fake = g.make_constant([0], mx.int32, (1,))
    g.tensors[fake.outputs[0]].names = {"beam_idx"}
    g.inputs.append(fake.outputs[0])

    assert not sdpa_to_paged_attention(g)

    # nothing was removed past the failing check
    assert g.has_input("beam_idx")
    assert g.has_input("attention_mask")


def test_non_parameter_attention_mask_fails():
    g = build_stateful_llm(num_layers=1, with_beam_idx=False)
    g.remove_parameter(g.input("attention_mask"))
    fake = g.make_constant([[1]], mx.int64, (1, 1))
    g.tensors[fake.outputs[0]].names = {"attention_mask"}
    g.inputs.append(fake.outputs[0])

    assert not sdpa_to_paged_attention(g)


def test_failure_is_logged(caplog):
    g = build_stateful_llm(num_layers=1, with_beam_idx=False)
    g.remove_parameter(g.input("attention_mask"))

    with caplog.at_level(logging.WARNING):
        assert not sdpa_to_paged_attention(g)

    assert "attention_mask" in caplog.text


def test_graph_without_cached_attention_still_converts():
    g = build_stateful_llm(num_layers=0)

    assert sdpa_to_paged_attention(g)
    assert g.input_names() == _expected_inputs(0)


# -------------------------------------------------
# Sequence lengths
# -------------------------------------------------

def test_prev_max_seq_len_structure():
    g = build_stateful_llm(num_layers=1, expose_past_length=True)
    assert sdpa_to_paged_attention(g)

    convert = g.producer(g.outputs[0])
    sub = g.producer(convert.inputs[0])
    assert sub.op == "subtract"
    assert sub.inputs[0] == g.input("max_context_len").outputs[0]

    cur = g.producer(g.producer(sub.inputs[1]).inputs[0])
    assert cur.op == "gather"
    shape_of = g.producer(cur.inputs[0])
    unsqueeze = g.producer(shape_of.inputs[0])
    assert unsqueeze.op == "unsqueeze"
    assert unsqueeze.inputs[0] == g.input("input_ids").outputs[0]


@pytest.mark.parametrize("num_tokens", [1, 5, 17])
def test_prev_max_seq_len_value(num_tokens):
    g = build_stateful_llm(num_layers=2, expose_past_length=True)
    assert sdpa_to_paged_attention(g)

    input_ids = mx.arange(num_tokens, dtype=mx.int64)
    max_context_len = mx.array(64, dtype=mx.int32)

    env = run_graph(
        g,
        {"input_ids": input_ids, "max_context_len": max_context_len},
        targets=[g.outputs[0]],
    )

    # input_ids becomes (num_tokens, 1), so one new token per step
    assert env[g.outputs[0]].item() == 63
