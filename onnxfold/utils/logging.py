from enum import Enum
from typing import Any, List, Union

__all__ = ["Color", "LOG_LEVELS", "debug", "info", "warn", "error", "set_log_level", "get_log_level", "graph_dump"]

class Color(Enum):
    RED            = '\033[31m'
    GREEN          = '\033[32m'
    YELLOW         = '\033[33m'
    MAGENTA        = '\033[35m'
    CYAN           = '\033[36m'
    REVERSE        = '\033[07m'
    RESET          = '\033[0m'

    def __str__(self):
        return self.value

    def __call__(self, s):
        return str(self) + str(s) + str(Color.RESET)

LOG_LEVELS = {
    'debug': 0,
    'info':  1,
    'warn':  2,
    'error': 3,
}

log_level = 0

def set_log_level(level: Union[str, int]):
    global log_level
    if isinstance(level, str):
        if level not in LOG_LEVELS:
            raise ValueError(
                f'Unknown log level: {level}. Choose from {list(LOG_LEVELS.keys())}'
            )
        log_level = LOG_LEVELS[level]
    else:
        log_level = level

def get_log_level():
    return log_level

def debug(*args):
    if log_level <= LOG_LEVELS['debug']:
        print(*args)
def info(*args):
    if log_level <= LOG_LEVELS['info']:
        print(*args)
def warn(*args, prefix=True):
    if log_level <= LOG_LEVELS['warn']:
        if prefix and any(args):
            print(
                Color.YELLOW('WARNING:'),
                *args
            )
        else:
            print(*args)
def error(*args, prefix=True):
    if log_level <= LOG_LEVELS['error']:
        if prefix and any(args):
            print(
                Color.RED('ERROR:'),
                *args
            )
        else:
            print(*args)


def _format_scope(graph: Any, indent: int) -> List[str]:
    pad = '  ' * indent
    lines = [
        f'{pad}graph {graph.name or "<unnamed>"}('
        + ', '.join(f'%{v.name}' for v in graph.inputs)
        + ')'
    ]
    for node in graph.nodes:
        outs = ', '.join(f'%{v.name}' for v in node.outputs)
        ins = ', '.join(f'%{v.name}' for v in node.inputs)
        scalar_attrs = {
            k: v for k, v in node.attrs.items() if isinstance(v, (int, float, str, list, tuple))
        }
        lines.append(f'{pad}  {outs} = {Color.MAGENTA(node.op)}[{scalar_attrs}]({ins})')
        for subgraph in node.subgraphs():
            lines.extend(_format_scope(subgraph, indent + 2))
    lines.append(f'{pad}  return (' + ', '.join(f'%{v.name}' for v in graph.outputs) + ')')
    return lines

def graph_dump(title: str, graph: Any):
    """Print a textual listing of ``graph`` and its nested scopes at debug level."""
    if log_level <= LOG_LEVELS['debug']:
        print(Color.CYAN(title))
        print('\n'.join(_format_scope(graph, 0)))
