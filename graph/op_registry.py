# graph/op_registry.py
from enum import Enum, auto
from typing import Dict, Set


class OpKind(Enum):
    # Graph entry points
    PARAMETER = auto()

    # Compile-time values
    CONSTANT = auto()

    # Pure elementwise ops (map-style)
    ELEMENTWISE = auto()

    # Reductions and scans
    REDUCTION = auto()

    # Matrix / tensor contractions
    GEMM = auto()

    # Shape-only ops (no data movement, views)
    RESHAPE_VIEW = auto()

    # Shape introspection (tensor -> its shape vector)
    SHAPE = auto()

    # Indexing / slicing / gather-style ops
    INDEXING = auto()

    # Attention primitives
    ATTENTION = auto()

    # Reads of cross-invocation state
    STATE_READ = auto()

    # Writes of cross-invocation state (graph sinks)
    SINK = auto()

    # Misc / complex / unknown semantics
    MISC = auto()


# -----------------------------------------------------------------------------
# Op classification
# -----------------------------------------------------------------------------

OP_KIND: Dict[str, OpKind] = {
    "parameter": OpKind.PARAMETER,
    "constant": OpKind.CONSTANT,

    # ---- elementwise ----
    "add": OpKind.ELEMENTWISE,
    "subtract": OpKind.ELEMENTWISE,
    "multiply": OpKind.ELEMENTWISE,
    "divide": OpKind.ELEMENTWISE,
    "rsqrt": OpKind.ELEMENTWISE,
    "convert": OpKind.ELEMENTWISE,

    # ---- reductions / scans ----
    "softmax": OpKind.REDUCTION,
    "cumsum": OpKind.REDUCTION,

    # ---- GEMM ----
    "matmul": OpKind.GEMM,

    # ---- shape / view ----
    "unsqueeze": OpKind.RESHAPE_VIEW,
    "reshape": OpKind.RESHAPE_VIEW,
    "transpose": OpKind.RESHAPE_VIEW,
    "flatten": OpKind.RESHAPE_VIEW,
    "concat": OpKind.RESHAPE_VIEW,
    "shape_of": OpKind.SHAPE,

    # ---- indexing ----
    "gather": OpKind.INDEXING,

    # ---- attention ----
    "scaled_dot_product_attention": OpKind.ATTENTION,
    "paged_attention": OpKind.ATTENTION,

    # ---- state ----
    "read_value": OpKind.STATE_READ,
    "assign": OpKind.SINK,
}


# Ops that carry through the value of their first input unchanged in meaning
# (used when tracing a tensor back to its source).
TRANSPARENT: Set[str] = {"convert"}


# -----------------------------------------------------------------------------
# Helper APIs
# -----------------------------------------------------------------------------

def get_op_kind(op: str) -> OpKind:
    return OP_KIND.get(op, OpKind.MISC)


def is_sink(op: str) -> bool:
    return get_op_kind(op) == OpKind.SINK
