# runtime/execute.py
import math
from typing import Callable, Dict, Iterable, Optional, Union

import mlx.core as mx

from graph.ir import GraphIR, OpIR
from graph.graph_utils import ancestors, toposort_ops


def _scalar(a: mx.array) -> int:
    return int(a.item()) if a.ndim == 0 else int(a.reshape(-1)[0].item())


def _gather(data, indices, axis):
    axis = _scalar(axis)
    # negative indices count from the end of the gathered axis
    indices = mx.where(indices < 0, indices + data.shape[axis], indices)
    return mx.take(data, indices, axis=axis)


def _sdpa(q, k, v, mask=None, scale=None):
    if scale is None:
        scale = 1.0 / math.sqrt(q.shape[-1])
    scores = mx.matmul(q, mx.swapaxes(k, -1, -2)) * scale
    if mask is not None:
        scores = scores + mask
    return mx.matmul(mx.softmax(scores, axis=-1), v)


# op name -> fn(op, *input arrays)
_EVAL: Dict[str, Callable] = {
    "constant": lambda op: mx.array(op.attrs["value"], dtype=op.attrs["dtype"]),
    "unsqueeze": lambda op, x, axis: mx.expand_dims(x, _scalar(axis)),
    "shape_of": lambda op, x: mx.array(x.shape, dtype=mx.int64),
    "gather": lambda op, data, idx, axis: _gather(data, idx, axis),
    "convert": lambda op, x: x.astype(op.attrs["dtype"]),
    "add": lambda op, a, b: mx.add(a, b),
    "subtract": lambda op, a, b: mx.subtract(a, b),
    "multiply": lambda op, a, b: mx.multiply(a, b),
    "divide": lambda op, a, b: mx.divide(a, b),
    "rsqrt": lambda op, x: mx.rsqrt(x),
    "cumsum": lambda op, x: mx.cumsum(x, axis=op.attrs.get("axis", -1)),
    "concat": lambda op, *xs: mx.concatenate(list(xs), axis=op.attrs.get("axis", 0)),
    "transpose": lambda op, x: mx.transpose(x, op.attrs["axes"]),
    "reshape": lambda op, x, shape: mx.reshape(x, [int(d) for d in shape.tolist()]),
    "flatten": lambda op, x: mx.flatten(x, op.attrs["start_axis"], op.attrs["end_axis"]),
    "matmul": lambda op, a, b: mx.matmul(a, b),
    "softmax": lambda op, x: mx.softmax(x, axis=op.attrs.get("axis", -1)),
    "scaled_dot_product_attention": lambda op, *xs: _sdpa(*xs),
}


def _bind_inputs(g: GraphIR, inputs: Dict[Union[int, str], mx.array]) -> Dict[int, mx.array]:
    env = {}
    by_name = {}
    for tid in g.inputs:
        for name in g.tensors[tid].names:
            by_name[name] = tid

    for key, value in inputs.items():
        if isinstance(key, str):
            if key not in by_name:
                raise KeyError(f"Graph has no input named {key!r}")
            key = by_name[key]
        env[key] = value
    return env


def run_graph(
    g: GraphIR,
    inputs: Dict[Union[int, str], mx.array],
    targets: Optional[Iterable[int]] = None,
) -> Dict[int, mx.array]:
    """
    Evaluate the graph with MLX. Inputs are keyed by tensor id or input name.

    With `targets`, only the ops those tensors depend on are evaluated, so
    graphs holding ops without a reference implementation (paged_attention,
    read_value) can still be partially run.
    """
    env = _bind_inputs(g, inputs)

    order = toposort_ops(g)
    if targets is not None:
        needed = ancestors(g, targets)
        order = [i for i in order if i in needed]

    for i in order:
        op: OpIR = g.ops[i]

        if op.op == "parameter":
            if op.outputs[0] not in env:
                raise KeyError(f"Unbound parameter {op.name!r} (t{op.outputs[0]})")
            continue

        fn = _EVAL.get(op.op)
        if fn is None:
            raise NotImplementedError(f"Unsupported op in reference runtime: {op.op}")

        args = [env[tid] for tid in op.inputs]
        out = fn(op, *args)

        if isinstance(out, mx.array):
            env[op.outputs[0]] = out
        else:
            raise RuntimeError(f"Unsupported output type from {op.op}")

    return env
