from __future__ import annotations

from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Sequence

import onnxfold.gs as gs

PeepholeRuleCallback = Callable[[gs.Graph, gs.ParamMap, bool], Optional[Dict[str, Any]]]

_REPORT_KEYS = ("matched_nodes", "rewritten_nodes", "changed", "message")


class _PeepholeRule:
    def __init__(
        self,
        rule_id: str,
        callback: PeepholeRuleCallback,
    ) -> None:
        self.rule_id = str(rule_id)
        self.callback = callback

    def apply(
        self,
        graph: gs.Graph,
        params: gs.ParamMap,
        allow_graph_input_mutation: bool,
    ) -> Dict[str, Any]:
        result = self.callback(graph, params, allow_graph_input_mutation) or {}
        rewritten_nodes = int(result.get("rewritten_nodes", 0))
        return {
            "rule_id": self.rule_id,
            "matched_nodes": int(result.get("matched_nodes", 0)),
            "rewritten_nodes": rewritten_nodes,
            "changed": bool(result.get("changed", rewritten_nodes > 0)),
            "message": str(result.get("message", "")),
            # Rule-specific fields, e.g. the pairs a fusion rule rewrote.
            "details": {k: v for k, v in result.items() if k not in _REPORT_KEYS},
        }


_REGISTERED_PEEPHOLE_RULES: "OrderedDict[str, _PeepholeRule]" = OrderedDict()


def register_peephole_rule(
    *,
    rule_id: str,
    callback: PeepholeRuleCallback,
    overwrite: bool = False,
) -> None:
    rid = str(rule_id).strip()
    if rid == "":
        raise ValueError("peephole rule_id must not be empty.")
    if not callable(callback):
        raise TypeError("peephole callback must be callable.")
    if rid in _REGISTERED_PEEPHOLE_RULES and not overwrite:
        raise ValueError(f"peephole rule already exists: {rid}")
    _REGISTERED_PEEPHOLE_RULES[rid] = _PeepholeRule(
        rule_id=rid,
        callback=callback,
    )


def clear_peephole_rules() -> None:
    _REGISTERED_PEEPHOLE_RULES.clear()


def get_registered_peephole_rule_ids() -> List[str]:
    return list(_REGISTERED_PEEPHOLE_RULES.keys())


def _resolve_enabled_rule_ids(enabled_rule_ids: Optional[Sequence[str]]) -> List[str]:
    registered_rule_ids = get_registered_peephole_rule_ids()
    if enabled_rule_ids is None:
        return registered_rule_ids
    requested = {str(v) for v in enabled_rule_ids}
    unknown_rule_ids = sorted(requested - set(registered_rule_ids))
    if len(unknown_rule_ids) > 0:
        raise ValueError(
            f"Unknown peephole rule id(s): {unknown_rule_ids}"
        )
    return [rid for rid in registered_rule_ids if rid in requested]


def _summarize(registered_rule_ids: List[str], applied_rules: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "registered_rule_count": len(registered_rule_ids),
        "enabled_rule_count": len(applied_rules),
        "executed_rule_count": len(applied_rules),
        "changed_rule_count": sum(1 for r in applied_rules if r["changed"]),
        "total_matched_nodes": sum(r["matched_nodes"] for r in applied_rules),
        "total_rewritten_nodes": sum(r["rewritten_nodes"] for r in applied_rules),
    }


def run_peephole_pipeline(
    *,
    graph: gs.Graph,
    params: gs.ParamMap,
    allow_graph_input_mutation: bool = True,
    enabled_rule_ids: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """Run the enabled rules over ``graph`` and ``params`` in place.

    Rules execute in registration order regardless of the order of
    ``enabled_rule_ids``. Every rule sees the graph as left by the previous one.
    """
    registered_rule_ids = get_registered_peephole_rule_ids()
    target_rule_ids = _resolve_enabled_rule_ids(enabled_rule_ids)

    applied_rules = [
        _REGISTERED_PEEPHOLE_RULES[rule_id].apply(graph, params, bool(allow_graph_input_mutation))
        for rule_id in target_rule_ids
    ]

    return {
        "schema_version": 1,
        "registered_rule_ids": registered_rule_ids,
        "enabled_rule_ids": target_rule_ids,
        "allow_graph_input_mutation": bool(allow_graph_input_mutation),
        "applied_rules": applied_rules,
        "summary": _summarize(registered_rule_ids, applied_rules),
    }
