from __future__ import annotations

from onnxfold.peephole.rules.conv_bn_fusion import (
    CONV_BN_FUSION_RULE_ID,
    eval_peephole,
    fuse_conv_batch_norm,
    fuse_conv_bn_weights,
    register_conv_bn_fusion_rule,
)
from onnxfold.peephole.rules.prune_unused_params import (
    PRUNE_UNUSED_PARAMS_RULE_ID,
    prune_unused_params_inplace,
    register_prune_unused_params_rule,
)


def register_default_peephole_rules() -> None:
    register_conv_bn_fusion_rule()


__all__ = [
    "CONV_BN_FUSION_RULE_ID",
    "PRUNE_UNUSED_PARAMS_RULE_ID",
    "eval_peephole",
    "fuse_conv_batch_norm",
    "fuse_conv_bn_weights",
    "prune_unused_params_inplace",
    "register_conv_bn_fusion_rule",
    "register_default_peephole_rules",
    "register_prune_unused_params_rule",
]
