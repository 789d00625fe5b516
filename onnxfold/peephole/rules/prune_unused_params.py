from __future__ import annotations

from typing import Any, Dict, List

import onnxfold.gs as gs
from onnxfold.peephole.pipeline import register_peephole_rule

PRUNE_UNUSED_PARAMS_RULE_ID = "prune_unused_params"


def prune_unused_params_inplace(
    graph: gs.Graph,
    params: gs.ParamMap,
) -> Dict[str, Any]:
    """Drop parameter-bound scope-level inputs that nothing references any more.

    Use-lists span nested scopes, so a parameter read only from inside an
    If/Loop body is kept. Runtime inputs not named in ``params`` are never touched.
    """
    original_param_count = int(len(params))
    kept_inputs: List[gs.Variable] = []
    removed_names: List[str] = []
    for value in graph.inputs:
        if value.name in params and len(value.uses) == 0:
            removed_names.append(value.name)
            continue
        kept_inputs.append(value)

    if len(removed_names) > 0:
        graph.inputs = kept_inputs
        for name in removed_names:
            del params[name]

    return {
        "removed_param_count": int(len(removed_names)),
        "removed_param_names": removed_names,
        "original_param_count": original_param_count,
        "changed": bool(len(removed_names) > 0),
    }


def apply_prune_unused_params(
    graph: gs.Graph,
    params: gs.ParamMap,
    allow_graph_input_mutation: bool = True,
) -> Dict[str, Any]:
    if not allow_graph_input_mutation:
        return {
            "matched_nodes": 0,
            "rewritten_nodes": 0,
            "changed": False,
            "message": "skipped: graph inputs must not be adjusted",
        }
    stats = prune_unused_params_inplace(graph, params)
    removed_param_count = int(stats.get("removed_param_count", 0))
    return {
        "matched_nodes": removed_param_count,
        "rewritten_nodes": removed_param_count,
        "changed": bool(stats.get("changed", False)),
        "message": (
            f"removed_params={removed_param_count} "
            f"original_params={stats.get('original_param_count', 0)}"
        ),
        "removed_param_names": list(stats.get("removed_param_names", [])),
    }


def register_prune_unused_params_rule() -> None:
    register_peephole_rule(
        rule_id=PRUNE_UNUSED_PARAMS_RULE_ID,
        callback=apply_prune_unused_params,
        overwrite=True,
    )
