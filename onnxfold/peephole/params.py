from __future__ import annotations

from typing import Dict, List, Tuple

import numpy as np

import onnxfold.gs as gs

ValueToParamPairMap = Dict[gs.Variable, Tuple[str, np.ndarray]]


def _constant_node_value(node: gs.Node):
    if node.op != "Constant" or len(node.outputs) != 1:
        return None
    value = node.attrs.get("value", None)
    if not isinstance(value, gs.Constant):
        return None
    return value.values


def build_value_to_params_map(
    graph: gs.Graph,
    params: gs.ParamMap,
) -> ValueToParamPairMap:
    """Bind graph values to the concrete tensors they are known to carry.

    Two sources contribute: scope-level inputs of ``graph`` whose names are keys of
    ``params``, and the single output of every ``Constant`` node in ``graph`` or any
    of its nested scopes. Values that match neither are simply absent.
    """
    vals_to_params: ValueToParamPairMap = {}
    for value in graph.inputs:
        if value.name in params:
            vals_to_params[value] = (value.name, params[value.name])
    for scope in graph.walk_scopes():
        for node in scope.nodes:
            values = _constant_node_value(node)
            if values is None:
                continue
            out = node.outputs[0]
            vals_to_params[out] = (out.name, values)
    return vals_to_params


def operand_values(
    node: gs.Node,
    vals_to_params: ValueToParamPairMap,
) -> List[np.ndarray]:
    """Tensors behind ``node``'s inputs, in input order.

    Inputs without a known tensor are skipped rather than reported, so the result
    may be shorter than ``node.inputs``.
    """
    values: List[np.ndarray] = []
    for value in node.inputs:
        pair = vals_to_params.get(value, None)
        if pair is None:
            continue
        values.append(pair[1])
    return values


def build_params_from_value_to_params_map(
    vals_to_params: ValueToParamPairMap,
    params: gs.ParamMap,
) -> gs.ParamMap:
    for value, (name, tensor) in vals_to_params.items():
        # Constant node outputs are bound for lookup only, never as parameters.
        if value.producer() is not None:
            continue
        params[name] = tensor
    return params
