# compile/pipeline.py
"""
Pass manager for graph rewrite passes.

A pass is a callable `pass_fn(g, ctx) -> bool` returning True when it
changed the graph. Passes run in registration order over the same
RewriteContext.
"""

import logging
from typing import Callable, List

from graph.ir import GraphIR
from graph.graph_utils import validate_graph
from compile.context import RewriteContext

logger = logging.getLogger(__name__)

GraphPass = Callable[[GraphIR, RewriteContext], bool]


class PassManager:
    def __init__(self, per_pass_validation: bool = True):
        # When False, intermediate graphs may be inconsistent and validation
        # runs once after the last pass.
        self.per_pass_validation = per_pass_validation
        self.passes: List[GraphPass] = []

    def register_pass(self, pass_fn: GraphPass) -> None:
        self.passes.append(pass_fn)

    def run_passes(self, g: GraphIR, ctx: RewriteContext) -> bool:
        changed = False

        for pass_fn in self.passes:
            name = getattr(pass_fn, "__name__", repr(pass_fn))
            applied = bool(pass_fn(g, ctx))
            logger.debug("Pass %s %s", name, "changed the graph" if applied else "found nothing")
            changed = changed or applied

            if self.per_pass_validation:
                validate_graph(g)

        if not self.per_pass_validation:
            validate_graph(g)

        return changed
