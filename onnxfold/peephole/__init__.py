from __future__ import annotations

from onnxfold.peephole.params import (
    build_params_from_value_to_params_map,
    build_value_to_params_map,
    operand_values,
)
from onnxfold.peephole.pipeline import (
    clear_peephole_rules,
    get_registered_peephole_rule_ids,
    register_peephole_rule,
    run_peephole_pipeline,
)
from onnxfold.peephole.rules import (
    CONV_BN_FUSION_RULE_ID,
    PRUNE_UNUSED_PARAMS_RULE_ID,
    eval_peephole,
    fuse_conv_batch_norm,
    fuse_conv_bn_weights,
    prune_unused_params_inplace,
    register_conv_bn_fusion_rule,
    register_default_peephole_rules,
    register_prune_unused_params_rule,
)

__all__ = [
    "CONV_BN_FUSION_RULE_ID",
    "PRUNE_UNUSED_PARAMS_RULE_ID",
    "build_params_from_value_to_params_map",
    "build_value_to_params_map",
    "clear_peephole_rules",
    "eval_peephole",
    "fuse_conv_batch_norm",
    "fuse_conv_bn_weights",
    "get_registered_peephole_rule_ids",
    "operand_values",
    "prune_unused_params_inplace",
    "register_conv_bn_fusion_rule",
    "register_default_peephole_rules",
    "register_peephole_rule",
    "register_prune_unused_params_rule",
    "run_peephole_pipeline",
]
