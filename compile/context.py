# compile/context.py
"""
Mutable state shared by the paged-attention rewrite passes.

One RewriteContext lives for exactly one sdpa_to_paged_attention() call.
Every pass receives it explicitly; the table below is the contract.

    field                    written by              read by
    -----------------------  ----------------------  --------------------------
    kv_parameters            state management        orchestrator (final inputs)
    model_remaining_params   orchestrator            state management
    sliding_window           orchestrator            state management
    max_context_len          orchestrator            state management, total len
    parameters_to_remove     state management        prev len, orchestrator
    assigns_to_remove        state management        (informational)
    results_to_remove        state management        orchestrator
    layer_index              state management        state management
    cur_seq_len              orchestrator            (informational)
    prev_max_seq_len         orchestrator            prev len
    position_ids             orchestrator            position ids
"""

from dataclasses import dataclass, field
from typing import List, Optional

from graph.ir import OpIR


@dataclass
class RewriteContext:
    # Paging metadata inputs: context_lens, subsequence_begins,
    # block_indices, block_indices_begins (in this order).
    model_remaining_params: List[OpIR]

    max_context_len: OpIR
    sliding_window: OpIR

    # Shared sequence-length expressions (tensor ids)
    cur_seq_len: int
    prev_max_seq_len: int

    # Unsqueezed external position ids (tensor id)
    position_ids: int

    # Accumulators
    kv_parameters: List[OpIR] = field(default_factory=list)
    parameters_to_remove: List[OpIR] = field(default_factory=list)
    assigns_to_remove: List[OpIR] = field(default_factory=list)
    results_to_remove: List[int] = field(default_factory=list)
    layer_index: int = 0

    def is_removed_parameter(self, op: Optional[OpIR]) -> bool:
        return op is not None and any(op is p for p in self.parameters_to_remove)

    def summary(self) -> str:
        return (
            f"RewriteContext("
            f"layers={self.layer_index}, "
            f"kv_parameters={len(self.kv_parameters)}, "
            f"parameters_to_remove={len(self.parameters_to_remove)}, "
            f"assigns_to_remove={len(self.assigns_to_remove)}, "
            f"results_to_remove={len(self.results_to_remove)})"
        )
