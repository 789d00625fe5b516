#! /usr/bin/env python

import os
import re
with open(os.path.join(os.path.dirname(__file__), '__init__.py')) as f:
    init_text = f.read()
    __version__ = re.search(r'__version__\s*=\s*[\'\"](.+?)[\'\"]', init_text).group(1)
import sys
import traceback
import onnx
from typing import Optional
from argparse import ArgumentParser

import onnxfold.gs as gs
from onnxfold.peephole import (
    CONV_BN_FUSION_RULE_ID,
    PRUNE_UNUSED_PARAMS_RULE_ID,
    register_default_peephole_rules,
    register_prune_unused_params_rule,
    run_peephole_pipeline,
)
from onnxfold.utils.logging import *


def optimize(
    input_onnx_file_path: Optional[str] = '',
    onnx_graph: Optional[onnx.ModelProto] = None,
    output_onnx_file_path: Optional[str] = '',
    allow_graph_input_mutation: Optional[bool] = True,
    prune_unused_params: Optional[bool] = False,
    non_verbose: Optional[bool] = False,
    verbosity: Optional[str] = 'debug',
) -> onnx.ModelProto:
    """Fold inference-mode BatchNormalization nodes into Conv in an ONNX model.

    Parameters
    ----------
    input_onnx_file_path: Optional[str]
        Input onnx file path.\n
        Either input_onnx_file_path or onnx_graph must be specified.

    onnx_graph: Optional[onnx.ModelProto]
        onnx.ModelProto.\n
        Either input_onnx_file_path or onnx_graph must be specified.\n
        onnx_graph If specified, ignore input_onnx_file_path and process onnx_graph.

    output_onnx_file_path: Optional[str]
        Output onnx file path.\n
        If not specified, the optimized model is only returned.

    allow_graph_input_mutation: Optional[bool]
        Allow passes that add or remove graph inputs (initializers).\n
        When False, no Conv/BatchNormalization pair is fused.\n
        Default: True

    prune_unused_params: Optional[bool]
        After fusion, remove initializers that are no longer referenced.\n
        Default: False

    non_verbose: Optional[bool]
        Shorthand to specify a verbosity of "error".\n
        Default: False

    verbosity: Optional[str]
        Change the level of information printed.\n
        Values are "debug", "info", "warn", and "error".\n
        Default: "debug"

    Returns
    ----------
    model: onnx.ModelProto
        Optimized model
    """

    if verbosity is None:
        verbosity = 'debug'
    set_log_level('error' if non_verbose else verbosity)

    # Either designation required
    if not input_onnx_file_path and not onnx_graph:
        error(
            f'One of input_onnx_file_path or onnx_graph must be specified.'
        )
        sys.exit(1)

    if onnx_graph is None:
        if not os.path.isfile(input_onnx_file_path):
            error(
                f'The specified *.onnx file does not exist. ' +
                f'input_onnx_file_path: {input_onnx_file_path}'
            )
            sys.exit(1)
        onnx_graph = onnx.load(input_onnx_file_path)

    info('')
    info(Color.REVERSE(f'Model loaded'), '=' * 72)
    graph, params = gs.import_onnx(onnx_graph)
    info(
        Color.GREEN('INFO:'),
        f'nodes: {len(graph.nodes)} inputs: {len(graph.inputs)} params: {len(params)}'
    )

    register_default_peephole_rules()
    register_prune_unused_params_rule()
    enabled_rule_ids = [CONV_BN_FUSION_RULE_ID]
    if prune_unused_params:
        enabled_rule_ids.append(PRUNE_UNUSED_PARAMS_RULE_ID)

    info('')
    info(Color.REVERSE(f'Model optimizing started'), '=' * 60)
    try:
        report = run_peephole_pipeline(
            graph=graph,
            params=params,
            allow_graph_input_mutation=allow_graph_input_mutation,
            enabled_rule_ids=enabled_rule_ids,
        )
    except Exception as ex:
        warn(traceback.format_exc(), prefix=False)
        error(f'Model optimizing failed: {ex}')
        raise
    for applied_rule in report['applied_rules']:
        info(
            Color.GREEN('INFO:'),
            f'{Color.MAGENTA(applied_rule["rule_id"])} '
            f'changed: {applied_rule["changed"]} {applied_rule["message"]}'
        )
        for fused in applied_rule['details'].get('fused_pairs', []):
            debug(
                f'{Color.GREEN("fused")}: {fused["conv"]} + {fused["batch_norm"]} -> {fused["fused"]} '
                f'scope={fused["scope"]} weight={fused["weight_shape"]}'
            )
        for name in applied_rule['details'].get('removed_param_names', []):
            debug(f'{Color.YELLOW("pruned")}: {name}')
    graph_dump('After eval_peephole:', graph)
    info(Color.GREEN(f'Model optimizing complete!'))

    model_fields = {
        'producer_name': onnx_graph.producer_name,
        'producer_version': onnx_graph.producer_version,
        'domain': onnx_graph.domain,
        'model_version': onnx_graph.model_version,
        'doc_string': onnx_graph.doc_string,
    }
    # Initializers are no longer listed as graph inputs, which needs IR version 4 or later.
    if onnx_graph.ir_version >= 4:
        model_fields['ir_version'] = onnx_graph.ir_version
    model = gs.export_onnx(graph, params, **model_fields)
    for opset_import in onnx_graph.opset_import:
        if opset_import.domain not in ('', 'ai.onnx'):
            model.opset_import.append(opset_import)

    if output_onnx_file_path:
        onnx.save(model, output_onnx_file_path)
        info(Color.GREEN(f'Optimized model output complete!'), output_onnx_file_path)

    return model


def main():
    parser = ArgumentParser()
    iV_group = parser.add_mutually_exclusive_group(required=True)
    iV_group.add_argument(
        '-i',
        '--input_onnx_file_path',
        type=str,
        help='Input onnx file path.'
    )
    iV_group.add_argument(
        '-V',
        '--version',
        action='store_true',
        help='Show version and exit.'
    )
    parser.add_argument(
        '-o',
        '--output_onnx_file_path',
        type=str,
        help=\
            'Output onnx file path. \n' +
            'Default: "{input file name}_folded.onnx"'
    )
    parser.add_argument(
        '-dgim',
        '--disallow_graph_input_mutation',
        action='store_true',
        help=\
            'Do not add or remove graph inputs. \n' +
            'Conv/BatchNormalization fusion needs new initializers and is skipped entirely.'
    )
    parser.add_argument(
        '-pup',
        '--prune_unused_params',
        action='store_true',
        help=\
            'Remove initializers that are no longer referenced after fusion.'
    )
    parser.add_argument(
        '-n',
        '--non_verbose',
        action='store_true',
        help=\
            'Shorthand to specify a verbosity of "error".'
    )
    parser.add_argument(
        '-v',
        '--verbosity',
        type=str,
        choices=['debug', 'info', 'warn', 'error'],
        default='debug',
        help=\
            'Change the level of information printed. ' +
            'Default: "debug"'
    )
    args = parser.parse_args()

    # Print version
    if args.version:
        print(__version__)
        sys.exit(0)

    output_onnx_file_path = args.output_onnx_file_path
    if not output_onnx_file_path:
        base, _ = os.path.splitext(args.input_onnx_file_path)
        output_onnx_file_path = f'{base}_folded.onnx'

    optimize(
        input_onnx_file_path=args.input_onnx_file_path,
        output_onnx_file_path=output_onnx_file_path,
        allow_graph_input_mutation=not args.disallow_graph_input_mutation,
        prune_unused_params=args.prune_unused_params,
        non_verbose=args.non_verbose,
        verbosity=args.verbosity,
    )


if __name__ == '__main__':
    main()
