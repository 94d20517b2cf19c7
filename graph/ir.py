# graph/ir.py
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Any

from graph.op_registry import OpKind, get_op_kind

# None entries are dynamic dims; shape=None is dynamic rank.
Shape = Optional[Tuple[Optional[int], ...]]


class GraphError(Exception):
    """Raised on invalid graph manipulation."""
    pass


@dataclass
class TensorIR:
    tid: int
    shape: Shape
    dtype: Any
    names: Set[str] = field(default_factory=set)


@dataclass(eq=False)
class OpIR:
    op: str
    inputs: List[int]
    outputs: List[int]
    attrs: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @property
    def kind(self) -> OpKind:
        return get_op_kind(self.op)

    def as_parameter(self) -> Optional["OpIR"]:
        """
        Capability query: the op itself if it is a graph entry point, else None.
        """
        return self if self.op == "parameter" else None


@dataclass
class GraphIR:
    ops: List[OpIR] = field(default_factory=list)
    tensors: Dict[int, TensorIR] = field(default_factory=dict)
    inputs: List[int] = field(default_factory=list)
    outputs: List[int] = field(default_factory=list)
    # Tensor ids are never reused, even after dead tensors are dropped
    next_tid: int = 0

    # -----------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------

    def new_tensor(self, shape: Shape, dtype) -> TensorIR:
        tid = max(self.next_tid, max(self.tensors.keys(), default=-1) + 1)
        self.next_tid = tid + 1
        t = TensorIR(tid=tid, shape=shape, dtype=dtype)
        self.tensors[tid] = t
        return t

    def add_op(
        self,
        op: str,
        inputs: Iterable[int],
        shape: Shape,
        dtype,
        attrs: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> OpIR:
        """
        Append a single-output op. Output shape and dtype are supplied by the
        caller; there is no shape inference here.
        """
        inputs = list(inputs)
        for tid in inputs:
            if tid not in self.tensors:
                raise GraphError(f"Op {op} reads unknown tensor {tid}")

        out = self.new_tensor(shape, dtype)
        node = OpIR(
            op=op,
            inputs=inputs,
            outputs=[out.tid],
            attrs=dict(attrs or {}),
            name=name,
        )
        self.ops.append(node)
        return node

    def make_parameter(self, dtype, shape: Shape) -> OpIR:
        """
        Create a parameter op. It is not an entry point until add_parameters().
        """
        return self.add_op("parameter", [], shape, dtype)

    def make_constant(self, value, dtype, shape: Shape = ()) -> OpIR:
        return self.add_op("constant", [], shape, dtype, attrs={"value": value, "dtype": dtype})

    # -----------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------

    def producer(self, tid: int) -> Optional[OpIR]:
        for op in self.ops:
            if tid in op.outputs:
                return op
        return None

    def consumers(self, tid: int) -> List[OpIR]:
        return [op for op in self.ops if tid in op.inputs]

    def has_input(self, name: str) -> bool:
        return any(name in self.tensors[tid].names for tid in self.inputs)

    def input(self, name: str) -> Optional[OpIR]:
        """
        Node producing the entry point tensor called `name`, or None.
        """
        for tid in self.inputs:
            if name in self.tensors[tid].names:
                return self.producer(tid)
        return None

    def input_names(self) -> List[str]:
        names = []
        for tid in self.inputs:
            t = self.tensors[tid]
            names.append(sorted(t.names)[0] if t.names else f"t{tid}")
        return names

    @property
    def parameters(self) -> List[OpIR]:
        params = []
        for tid in self.inputs:
            op = self.producer(tid)
            if op is not None and op.as_parameter() is not None:
                params.append(op)
        return params

    @property
    def sinks(self) -> List[OpIR]:
        return [op for op in self.ops if op.kind == OpKind.SINK]

    # -----------------------------------------------------------------
    # Mutation
    # -----------------------------------------------------------------

    def add_parameters(self, params: Iterable[OpIR]) -> None:
        for p in params:
            if p.as_parameter() is None:
                raise GraphError(f"Cannot register {p.op} op as a graph input")
            if p not in self.ops:
                self.ops.append(p)
            tid = p.outputs[0]
            if tid not in self.inputs:
                self.inputs.append(tid)

    def remove_parameter(self, param: OpIR) -> None:
        """
        Drop a parameter from the entry points. The op itself stays until it
        is no longer consumed (see eliminate_dead_ops).
        """
        tid = param.outputs[0]
        if tid not in self.inputs:
            raise GraphError(f"Parameter {param.name!r} is not a graph input")
        self.inputs.remove(tid)

    def add_results(self, tids: Iterable[int]) -> None:
        for tid in tids:
            if tid not in self.tensors:
                raise GraphError(f"Unknown result tensor {tid}")
            self.outputs.append(tid)

    def remove_result(self, tid: int) -> None:
        if tid not in self.outputs:
            raise GraphError(f"Tensor {tid} is not a graph result")
        self.outputs.remove(tid)

    def remove_sink(self, sink: OpIR) -> None:
        if sink.kind != OpKind.SINK:
            raise GraphError(f"{sink.op} op is not a sink")
        self.ops.remove(sink)

    def replace(self, old: int, new: int, exclude: Iterable[OpIR] = ()) -> None:
        """
        Rewire every consumer of tensor `old` (and every result) to `new`.

        Ops in `exclude` keep reading `old`; this is how a node inserted
        right after `old` avoids consuming itself. `old` remains addressable
        only while something still references it.
        """
        if new not in self.tensors:
            raise GraphError(f"Unknown replacement tensor {new}")
        skip = list(exclude)
        for op in self.ops:
            if any(op is s for s in skip):
                continue
            op.inputs = [new if tid == old else tid for tid in op.inputs]
        self.outputs = [new if tid == old else tid for tid in self.outputs]

    def set_partial_shape(self, op: OpIR, shape: Shape) -> None:
        self.tensors[op.outputs[0]].shape = shape
