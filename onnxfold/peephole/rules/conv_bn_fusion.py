from __future__ import annotations

from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import numpy as np

import onnxfold.gs as gs
from onnxfold.peephole.params import (
    ValueToParamPairMap,
    build_params_from_value_to_params_map,
    build_value_to_params_map,
    operand_values,
)
from onnxfold.peephole.pipeline import register_peephole_rule

CONV_BN_FUSION_RULE_ID = "conv_bn_fusion"


class _ConvBnMatch(NamedTuple):
    bn_node: gs.Node
    conv_w: np.ndarray
    conv_b: Optional[np.ndarray]
    bn_scale: np.ndarray
    bn_bias: np.ndarray
    bn_mean: np.ndarray
    bn_var: np.ndarray
    epsilon: float


def _bn_epsilon(node: gs.Node) -> float:
    return float(node.attrs.get("epsilon", 1e-5))


def _is_floating(arr: np.ndarray) -> bool:
    return bool(np.issubdtype(arr.dtype, np.floating))


def _match_conv_bn(
    conv_node: gs.Node,
    vals_to_params: ValueToParamPairMap,
) -> Optional[_ConvBnMatch]:
    """Return the fusable BatchNormalization consumer of ``conv_node``, or None.

    Conv and BatchNormalization can be fused only if the BatchNormalization
    inputs scale, bias, mean and var are all rank-1 tensors of the same length C,
    and C equals dim 0 of the Conv weight.
    """
    if len(conv_node.outputs) < 1:
        return None
    conv_out = conv_node.outputs[0]
    if len(conv_out.uses) != 1:
        return None
    bn_node = conv_out.uses[0].user
    if not isinstance(bn_node, gs.Node) or bn_node.op != "BatchNormalization":
        return None
    if bn_node.graph is not conv_node.graph:
        return None

    # A BatchNormalization that also emits running statistics is in training mode.
    if len(conv_node.outputs) != len(bn_node.outputs):
        return None

    conv_vals = operand_values(conv_node, vals_to_params)
    if len(conv_vals) not in (1, 2):
        return None
    if len(conv_node.inputs) == 3 and len(conv_vals) != 2:
        return None

    bn_vals = operand_values(bn_node, vals_to_params)
    if len(bn_vals) != 4:
        return None

    # See https://github.com/onnx/onnx/blob/main/docs/Operators.md#BatchNormalization
    bn_scale, bn_bias, bn_mean, bn_var = [np.array(v, copy=True) for v in bn_vals]
    # See https://github.com/onnx/onnx/blob/main/docs/Operators.md#Conv
    conv_w = np.array(conv_vals[0], copy=True)
    conv_b = np.array(conv_vals[1], copy=True) if len(conv_node.inputs) == 3 else None

    tensors = [bn_scale, bn_bias, bn_mean, bn_var, conv_w]
    if conv_b is not None:
        tensors.append(conv_b)
    if not all(_is_floating(t) for t in tensors):
        return None
    if any(t.ndim != 1 for t in [bn_scale, bn_bias, bn_mean, bn_var]):
        return None
    channels = int(bn_scale.shape[0])
    if any(int(t.shape[0]) != channels for t in [bn_bias, bn_mean, bn_var]):
        return None
    if conv_w.ndim <= 2 or int(conv_w.shape[0]) != channels:
        return None

    return _ConvBnMatch(
        bn_node=bn_node,
        conv_w=conv_w,
        conv_b=conv_b,
        bn_scale=bn_scale,
        bn_bias=bn_bias,
        bn_mean=bn_mean,
        bn_var=bn_var,
        epsilon=_bn_epsilon(bn_node),
    )


def fuse_conv_bn_weights(
    *,
    conv_w: np.ndarray,
    conv_b: Optional[np.ndarray],
    bn_scale: np.ndarray,
    bn_bias: np.ndarray,
    bn_mean: np.ndarray,
    bn_var: np.ndarray,
    epsilon: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Fold an inference-mode BatchNormalization into the preceding Conv.

    ``y = scale * (conv(x) - mean) / sqrt(var + eps) + bias`` is rewritten as
    ``conv(x) * w' + b'`` with, per output channel c,

    - ``w'[c, ...] = w[c, ...] * scale[c] / sqrt(var[c] + eps)``
    - ``b' = (b - mean) * scale / sqrt(var + eps) + bias``, or
      ``bias - mean * scale / sqrt(var + eps)`` when the Conv has no bias.

    Both results take the dtype of ``conv_w``: Conv requires W and B to share
    the type of its input, while BatchNormalization parameters may differ.
    Input arrays are not modified. ``var + eps <= 0`` yields NaN/Inf in the
    result without any warning.
    """
    w = np.array(conv_w, copy=True)
    channels = int(w.shape[0])
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        bn_std = np.sqrt(bn_var + np.asarray(epsilon, dtype=bn_var.dtype))
        bn_mul = bn_scale / bn_std

        reshape_dims = [channels] + [1] * (w.ndim - 1)
        w_folded = w * bn_mul.reshape(reshape_dims)

        if conv_b is not None:
            b_folded = (conv_b - bn_mean) * bn_mul + bn_bias
        else:
            b_folded = bn_bias - bn_mean * bn_mul
        w_folded = w_folded.astype(w.dtype, copy=False)
        b_folded = b_folded.astype(w.dtype, copy=False)
    return w_folded, b_folded


def _rewrite_conv_bn(
    *,
    graph: gs.Graph,
    cursor: gs.NodeIterator,
    conv_node: gs.Node,
    bn_node: gs.Node,
    fused_w: np.ndarray,
    fused_b: np.ndarray,
    vals_to_params: ValueToParamPairMap,
) -> gs.Node:
    bn_output = bn_node.outputs[0]
    bn_output_name = bn_output.name
    op_name = conv_node.name or "conv"

    fused_conv = graph.create_node("Conv", num_outputs=1, name=f"{op_name}_bn_fused")
    fused_conv.outputs[0].copy_metadata(bn_output)
    fused_conv.copy_attributes(conv_node)
    fused_conv.insert_before(bn_node)
    fused_conv.add_input(conv_node.inputs[0])

    new_w = graph.add_input(f"{op_name}_bn_fold_w")
    vals_to_params[new_w] = (new_w.name, fused_w)
    new_w.infer_type_from(fused_w)
    fused_conv.add_input(new_w)

    new_b = graph.add_input(f"{op_name}_bn_fold_b")
    vals_to_params[new_b] = (new_b.name, fused_b)
    new_b.infer_type_from(fused_b)
    fused_conv.add_input(new_b)

    bn_output.replace_all_uses_with(fused_conv.outputs[0])
    bn_node.destroy()
    cursor.destroy_current()
    # Downstream consumers that refer to the value by name keep seeing the same name.
    fused_conv.outputs[0].name = bn_output_name
    return fused_conv


def fuse_conv_batch_norm(
    graph: gs.Graph,
    scope: gs.Graph,
    vals_to_params: ValueToParamPairMap,
    fused_records: Optional[List[Dict[str, Any]]] = None,
) -> int:
    """Fuse every eligible Conv -> BatchNormalization pair in ``scope``.

    Nested scopes owned by a node are processed before that node is considered.
    New parameters are added as inputs of ``graph``, the top-level scope.
    When ``fused_records`` is given, one entry per fused pair is appended to it.
    Returns the number of fused pairs.
    """
    fused_pairs = 0
    cursor = scope.iter_nodes()
    for node in cursor:
        for subgraph in node.subgraphs():
            fused_pairs += fuse_conv_batch_norm(graph, subgraph, vals_to_params, fused_records)
        if node.op != "Conv":
            continue
        match = _match_conv_bn(node, vals_to_params)
        if match is None:
            continue

        fused_w, fused_b = fuse_conv_bn_weights(
            conv_w=match.conv_w,
            conv_b=match.conv_b,
            bn_scale=match.bn_scale,
            bn_bias=match.bn_bias,
            bn_mean=match.bn_mean,
            bn_var=match.bn_var,
            epsilon=match.epsilon,
        )
        conv_name = node.name
        bn_name = match.bn_node.name
        fused_conv = _rewrite_conv_bn(
            graph=graph,
            cursor=cursor,
            conv_node=node,
            bn_node=match.bn_node,
            fused_w=fused_w,
            fused_b=fused_b,
            vals_to_params=vals_to_params,
        )
        if fused_records is not None:
            fused_records.append(
                {
                    "scope": scope.name,
                    "conv": conv_name,
                    "batch_norm": bn_name,
                    "fused": fused_conv.name,
                    "weight_shape": [int(d) for d in fused_w.shape],
                }
            )
        fused_pairs += 1
    return fused_pairs


def eval_peephole(
    graph: gs.Graph,
    params: gs.ParamMap,
    allow_graph_input_mutation: bool = True,
) -> Dict[str, Any]:
    """Fold inference-mode BatchNormalization nodes into their producing Conv.

    ``graph`` and ``params`` are updated in place. Fusing adds two scope-level
    inputs per pair, so nothing runs unless ``allow_graph_input_mutation`` is set.
    The parameters of the original Conv and BatchNormalization stay in ``params``.
    """
    vals_to_params = build_value_to_params_map(graph, params)

    fused_records: List[Dict[str, Any]] = []
    if allow_graph_input_mutation:
        fuse_conv_batch_norm(graph, graph, vals_to_params, fused_records)
        build_params_from_value_to_params_map(vals_to_params, params)

    fused_pairs = len(fused_records)
    return {
        "matched_nodes": int(fused_pairs * 2),
        "rewritten_nodes": int(fused_pairs * 2),
        "changed": bool(fused_pairs > 0),
        "message": (
            f"allow_graph_input_mutation={bool(allow_graph_input_mutation)} "
            f"fused_conv_bn_pairs={fused_pairs}"
        ),
        "fused_pairs": fused_records,
    }


def register_conv_bn_fusion_rule() -> None:
    register_peephole_rule(
        rule_id=CONV_BN_FUSION_RULE_ID,
        callback=eval_peephole,
        overwrite=True,
    )
