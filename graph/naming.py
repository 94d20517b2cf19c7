# graph/naming.py
from graph.ir import GraphIR, OpIR


def set_name(g: GraphIR, node: OpIR, name: str) -> OpIR:
    """
    Name both the node and its output tensor.

    Lookups go through either level, so the tensor gets exactly {name} and
    any previous tensor names are dropped.
    """
    node.name = name
    assert len(node.outputs) == 1, f"{node.op} op {name!r} must have exactly one output"
    g.tensors[node.outputs[0]].names = {name}
    return node
