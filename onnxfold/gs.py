from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np
import onnx
from onnx import helper, numpy_helper

ParamMap = Dict[str, np.ndarray]


def _ensure_numpy_dtype(dtype: Any) -> Optional[np.dtype]:
    if dtype is None:
        return None
    if isinstance(dtype, np.dtype):
        return dtype
    if isinstance(dtype, int):
        return _onnx_dtype_to_numpy(dtype)
    try:
        return np.dtype(dtype)
    except TypeError:
        return None


def _onnx_dtype_to_numpy(elem_type: int) -> Optional[np.dtype]:
    try:
        return np.dtype(helper.tensor_dtype_to_np_dtype(elem_type))
    except (KeyError, TypeError, ValueError):
        return None


def _numpy_dtype_to_onnx(dtype: Any) -> int:
    if isinstance(dtype, int):
        return dtype
    np_dtype = _ensure_numpy_dtype(dtype)
    if np_dtype is None:
        return onnx.TensorProto.FLOAT
    try:
        return helper.np_dtype_to_tensor_dtype(np_dtype)
    except (KeyError, TypeError, ValueError):
        return onnx.TensorProto.FLOAT


def _parse_dim(dim: onnx.TensorShapeProto.Dimension) -> Optional[int | str]:
    if dim.HasField("dim_value"):
        return int(dim.dim_value)
    if dim.HasField("dim_param"):
        return dim.dim_param
    return None


def _parse_tensor_shape(value_info: onnx.ValueInfoProto) -> Optional[List[int | str | None]]:
    if not value_info.type.HasField("tensor_type"):
        return None
    tensor_type = value_info.type.tensor_type
    if not tensor_type.HasField("shape"):
        return None
    return [_parse_dim(dim) for dim in tensor_type.shape.dim]


def _index_of(items: List[Any], target: Any) -> int:
    for idx, item in enumerate(items):
        if item is target:
            return idx
    raise ValueError(f"{type(target).__name__} is not part of this graph")


@dataclass(frozen=True)
class Use:
    """One reference to a Variable.

    ``user`` is either the consuming Node (``offset`` is its input slot) or the
    Graph whose ``outputs`` list holds the value (``offset`` is the output slot).
    """
    user: Any
    offset: int


@dataclass(eq=False)
class Variable:
    name: str = ""
    dtype: Any = None
    shape: Optional[List[int | str | None]] = None
    inputs: List[Any] = field(default_factory=list, repr=False)
    uses: List[Use] = field(default_factory=list, repr=False)

    @property
    def outputs(self) -> List["Node"]:
        consumers: List[Node] = []
        for use in self.uses:
            if isinstance(use.user, Node) and all(c is not use.user for c in consumers):
                consumers.append(use.user)
        return consumers

    def producer(self) -> Optional["Node"]:
        return self.inputs[0] if len(self.inputs) > 0 else None

    def i(self, producer_idx: int = 0) -> Any:
        if producer_idx >= len(self.inputs):
            raise IndexError("producer index out of range")
        return self.inputs[producer_idx]

    def o(self, consumer_idx: int = 0) -> Any:
        consumers = self.outputs
        if consumer_idx >= len(consumers):
            raise IndexError("consumer index out of range")
        return consumers[consumer_idx]

    def replace_all_uses_with(self, new_value: "Variable") -> None:
        for use in list(self.uses):
            if isinstance(use.user, Node):
                use.user.replace_input(use.offset, new_value)
            else:
                use.user.replace_output(use.offset, new_value)

    def copy_metadata(self, other: "Variable") -> "Variable":
        self.dtype = other.dtype
        self.shape = list(other.shape) if other.shape is not None else None
        return self

    def infer_type_from(self, values: Any) -> "Variable":
        arr = np.asarray(values)
        self.dtype = arr.dtype
        self.shape = [int(d) for d in arr.shape]
        return self


@dataclass(eq=False)
class Constant(Variable):
    values: np.ndarray = field(default_factory=lambda: np.asarray(0, dtype=np.float32))

    def __init__(
        self,
        name: str = "",
        values: Any = None,
        dtype: Any = None,
        shape: Optional[List[int | str | None]] = None,
    ):
        np_values = np.asarray(values) if values is not None else np.asarray(0, dtype=np.float32)
        resolved_dtype = _ensure_numpy_dtype(dtype) if dtype is not None else np_values.dtype
        if resolved_dtype is not None and np_values.dtype != resolved_dtype:
            np_values = np_values.astype(resolved_dtype)
        resolved_shape = shape if shape is not None else list(np_values.shape)
        super().__init__(
            name=name,
            dtype=np_values.dtype,
            shape=resolved_shape,
            inputs=[],
            uses=[],
        )
        self.values = np_values


def _drop_use(value: Variable, user: Any, offset: int) -> None:
    for idx, use in enumerate(value.uses):
        if use.user is user and use.offset == offset:
            del value.uses[idx]
            return


@dataclass(eq=False)
class Node:
    op: str
    name: str = ""
    inputs: List[Variable] = field(default_factory=list)
    outputs: List[Variable] = field(default_factory=list)
    attrs: Dict[str, Any] = field(default_factory=dict)
    graph: Optional["Graph"] = field(default=None, repr=False)

    def __post_init__(self):
        for offset, inp in enumerate(self.inputs):
            inp.uses.append(Use(self, offset))
        for out in self.outputs:
            if all(p is not self for p in out.inputs):
                out.inputs.append(self)

    def i(self, tensor_idx: int = 0, producer_idx: int = 0) -> Any:
        if tensor_idx >= len(self.inputs):
            raise IndexError("input tensor index out of range")
        producers = self.inputs[tensor_idx].inputs
        if producer_idx >= len(producers):
            raise IndexError("producer index out of range")
        return producers[producer_idx]

    def o(self, consumer_idx: int = 0, tensor_idx: int = 0) -> Any:
        if tensor_idx >= len(self.outputs):
            raise IndexError("output tensor index out of range")
        return self.outputs[tensor_idx].o(consumer_idx)

    def subgraphs(self) -> List["Graph"]:
        found: List[Graph] = []
        for value in self.attrs.values():
            if isinstance(value, Graph):
                found.append(value)
            elif isinstance(value, (list, tuple)):
                found.extend(item for item in value if isinstance(item, Graph))
        return found

    def add_input(self, value: Variable) -> Variable:
        self.inputs.append(value)
        value.uses.append(Use(self, len(self.inputs) - 1))
        return value

    def replace_input(self, offset: int, value: Variable) -> Variable:
        if offset >= len(self.inputs):
            raise IndexError("input tensor index out of range")
        _drop_use(self.inputs[offset], self, offset)
        self.inputs[offset] = value
        value.uses.append(Use(self, offset))
        return value

    def remove_all_inputs(self) -> None:
        for offset, inp in enumerate(self.inputs):
            _drop_use(inp, self, offset)
        self.inputs = []

    def copy_attributes(self, other: "Node") -> "Node":
        self.attrs = dict(other.attrs)
        return self

    def insert_before(self, anchor: "Node") -> "Node":
        scope = anchor.graph
        if scope is None:
            raise ValueError(f"anchor node {anchor.name!r} is not part of a graph")
        scope.nodes.insert(_index_of(scope.nodes, anchor), self)
        self.graph = scope
        return self

    def destroy(self) -> None:
        for out in self.outputs:
            if len(out.uses) > 0:
                raise ValueError(
                    f"cannot destroy node {self.name!r}: output {out.name!r} still has {len(out.uses)} use(s)"
                )
        self.remove_all_inputs()
        for out in self.outputs:
            out.inputs = [p for p in out.inputs if p is not self]
        if self.graph is not None:
            del self.graph.nodes[_index_of(self.graph.nodes, self)]
            self.graph = None


class NodeIterator:
    """Forward cursor over a scope that tolerates erasing the node it stands on.

    The position is re-resolved from the current node on every step, so nodes
    inserted or destroyed after the cursor do not disturb the scan.
    """

    def __init__(self, graph: "Graph"):
        self.graph = graph
        self._index = 0
        self._current: Optional[Node] = None

    def __iter__(self) -> "NodeIterator":
        return self

    def __next__(self) -> Node:
        nodes = self.graph.nodes
        if self._current is not None:
            if self._index >= len(nodes) or nodes[self._index] is not self._current:
                self._index = _index_of(nodes, self._current)
            self._index += 1
        if self._index >= len(nodes):
            self._current = None
            raise StopIteration
        self._current = nodes[self._index]
        return self._current

    def destroy_current(self) -> None:
        node = self._current
        if node is None:
            raise ValueError("iterator is not positioned on a node")
        self._index = _index_of(self.graph.nodes, node)
        # The next node slides into the current slot.
        self._current = None
        node.destroy()


@dataclass(eq=False)
class Graph:
    nodes: List[Node] = field(default_factory=list)
    inputs: List[Variable] = field(default_factory=list)
    outputs: List[Variable] = field(default_factory=list)
    opset: int = 13
    name: str = ""

    def __post_init__(self):
        for node in self.nodes:
            node.graph = self
        for offset, out in enumerate(self.outputs):
            out.uses.append(Use(self, offset))

    def iter_nodes(self) -> NodeIterator:
        return NodeIterator(self)

    def walk_scopes(self) -> Iterator["Graph"]:
        yield self
        for node in self.nodes:
            for subgraph in node.subgraphs():
                yield from subgraph.walk_scopes()

    def _used_names(self) -> Set[str]:
        used: Set[str] = set()
        for scope in self.walk_scopes():
            for tensor in list(scope.inputs) + list(scope.outputs):
                used.add(tensor.name)
            for node in scope.nodes:
                used.add(node.name)
                for tensor in list(node.inputs) + list(node.outputs):
                    used.add(tensor.name)
        used.discard("")
        return used

    def _next_name(self, base: str, used_names: Optional[Set[str]] = None) -> str:
        used = used_names if used_names is not None else self._used_names()
        candidate = str(base) if str(base) != "" else "tmp"
        if candidate not in used:
            used.add(candidate)
            return candidate
        i = 1
        while True:
            c = f"{candidate}_{i}"
            if c not in used:
                used.add(c)
                return c
            i += 1

    def add_input(self, name: str = "") -> Variable:
        value = Variable(name=self._next_name(name or "input"))
        self.inputs.append(value)
        return value

    def create_node(self, op: str, num_outputs: int = 1, name: str = "") -> Node:
        used = self._used_names()
        node_name = self._next_name(name or op, used)
        outputs = [
            Variable(name=self._next_name(f"{node_name}_output_{idx}", used))
            for idx in range(num_outputs)
        ]
        return Node(op=op, name=node_name, outputs=outputs)

    def replace_output(self, offset: int, value: Variable) -> Variable:
        if offset >= len(self.outputs):
            raise IndexError("output tensor index out of range")
        _drop_use(self.outputs[offset], self, offset)
        self.outputs[offset] = value
        value.uses.append(Use(self, offset))
        return value

    def _iter_tensors(self) -> Iterator[Variable]:
        seen = set()
        for scope in self.walk_scopes():
            tensors = list(scope.inputs) + list(scope.outputs)
            for node in scope.nodes:
                tensors.extend(node.inputs)
                tensors.extend(node.outputs)
            for tensor in tensors:
                if id(tensor) in seen:
                    continue
                seen.add(id(tensor))
                yield tensor

    def _rebuild_edges(self) -> None:
        for tensor in self._iter_tensors():
            tensor.inputs = []
            tensor.uses = []
        for scope in self.walk_scopes():
            for node in scope.nodes:
                node.graph = scope
                for offset, inp in enumerate(node.inputs):
                    inp.uses.append(Use(node, offset))
                for out in node.outputs:
                    if all(p is not node for p in out.inputs):
                        out.inputs.append(node)
            for offset, out in enumerate(scope.outputs):
                out.uses.append(Use(scope, offset))


def _sanitize_string_attr(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, list):
        return [_sanitize_string_attr(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_sanitize_string_attr(v) for v in value)
    return value


def _make_constant_from_tensor(name: str, tensor_proto: onnx.TensorProto) -> Constant:
    values = numpy_helper.to_array(tensor_proto)
    return Constant(name=name, values=values)


def _import_graph_proto(
    graph_proto: onnx.GraphProto,
    opset: int,
    outer_tensors: Optional[Dict[str, Variable]] = None,
    params: Optional[ParamMap] = None,
) -> Graph:
    value_info_by_name: Dict[str, Dict[str, Any]] = {}
    for value_info in list(graph_proto.input) + list(graph_proto.value_info) + list(graph_proto.output):
        if not value_info.name:
            continue
        dtype = None
        if value_info.type.HasField("tensor_type"):
            dtype = _onnx_dtype_to_numpy(value_info.type.tensor_type.elem_type)
        value_info_by_name[value_info.name] = {
            "dtype": dtype,
            "shape": _parse_tensor_shape(value_info),
        }

    # Names defined by an enclosing scope stay visible unless shadowed here.
    tensors_by_name: Dict[str, Variable] = dict(outer_tensors or {})
    tensors_by_name.pop("", None)

    def _new_tensor(name: str) -> Variable:
        info = value_info_by_name.get(name, {})
        tensor = Variable(name=name, dtype=info.get("dtype"), shape=info.get("shape"))
        tensors_by_name[name] = tensor
        return tensor

    def _get_or_create_tensor(name: str) -> Variable:
        if name in tensors_by_name:
            return tensors_by_name[name]
        return _new_tensor(name)

    graph_inputs: List[Variable] = [_new_tensor(vi.name) for vi in graph_proto.input]
    imported_nodes: List[Node] = []

    for initializer in graph_proto.initializer:
        values = numpy_helper.to_array(initializer)
        if params is not None:
            # Top-level initializers are scope-level inputs bound in the parameter table.
            tensor = tensors_by_name.get(initializer.name)
            if tensor is None or all(tensor is not v for v in graph_inputs):
                tensor = _new_tensor(initializer.name)
                graph_inputs.append(tensor)
            tensor.infer_type_from(values)
            params[initializer.name] = values
        else:
            tensor = _new_tensor(initializer.name)
            tensor.infer_type_from(values)
            imported_nodes.append(
                Node(
                    op="Constant",
                    name=f"{initializer.name}_initializer",
                    outputs=[tensor],
                    attrs={"value": Constant(name=initializer.name, values=values)},
                )
            )

    for node_proto in graph_proto.node:
        input_names = list(node_proto.input)
        while len(input_names) > 0 and input_names[-1] == "":
            input_names.pop()
        node_inputs: List[Variable] = [
            Variable(name="") if name == "" else _get_or_create_tensor(name)
            for name in input_names
        ]

        attrs: Dict[str, Any] = {}
        for attr in node_proto.attribute:
            attr_val = onnx.helper.get_attribute_value(attr)
            attr_val = _sanitize_string_attr(attr_val)
            if isinstance(attr_val, onnx.GraphProto):
                attrs[attr.name] = _import_graph_proto(attr_val, opset, tensors_by_name)
            elif isinstance(attr_val, list):
                converted = []
                for item in attr_val:
                    if isinstance(item, onnx.GraphProto):
                        converted.append(_import_graph_proto(item, opset, tensors_by_name))
                    else:
                        converted.append(_sanitize_string_attr(item))
                attrs[attr.name] = converted
            elif isinstance(attr_val, onnx.TensorProto) and node_proto.op_type == "Constant" and attr.name == "value":
                const_name = node_proto.output[0] if len(node_proto.output) > 0 else (node_proto.name or attr.name)
                attrs[attr.name] = _make_constant_from_tensor(const_name, attr_val)
            else:
                attrs[attr.name] = attr_val

        node_outputs = [
            Variable(name="") if name == "" else _new_tensor(name)
            for name in node_proto.output
        ]
        imported_nodes.append(
            Node(
                op=node_proto.op_type,
                name=node_proto.name,
                inputs=node_inputs,
                outputs=node_outputs,
                attrs=attrs,
            )
        )

    graph_outputs = [_get_or_create_tensor(vi.name) for vi in graph_proto.output]

    return Graph(
        nodes=imported_nodes,
        inputs=graph_inputs,
        outputs=graph_outputs,
        opset=opset,
        name=graph_proto.name,
    )


def import_onnx(model: onnx.ModelProto) -> Tuple[Graph, ParamMap]:
    if isinstance(model, onnx.GraphProto):
        model = helper.make_model(model)
    if not isinstance(model, onnx.ModelProto):
        raise TypeError("import_onnx expects an onnx.ModelProto or onnx.GraphProto")

    opset = 13
    for opset_import in model.opset_import:
        if opset_import.domain in ("", "ai.onnx"):
            opset = int(opset_import.version)
            break

    params: ParamMap = {}
    graph = _import_graph_proto(model.graph, opset, params=params)
    graph.name = model.graph.name
    graph._rebuild_edges()
    return graph, params


def _normalize_shape(shape: Any) -> Optional[List[Any]]:
    if shape is None:
        return None
    if isinstance(shape, tuple):
        shape = list(shape)
    if not isinstance(shape, list):
        return None
    normalized = []
    for dim in shape:
        if isinstance(dim, (int, np.integer)):
            normalized.append(int(dim))
        elif isinstance(dim, str):
            normalized.append(dim)
        else:
            normalized.append(None)
    return normalized


def _make_value_info(tensor: Variable) -> onnx.ValueInfoProto:
    return helper.make_tensor_value_info(
        tensor.name,
        _numpy_dtype_to_onnx(tensor.dtype),
        _normalize_shape(tensor.shape),
    )


def _export_graph_proto(graph: Graph, params: ParamMap) -> onnx.GraphProto:
    def _convert_attr_value(attr_name: str, value: Any) -> Any:
        if isinstance(value, Graph):
            return _export_graph_proto(value, {})
        if isinstance(value, Constant):
            return numpy_helper.from_array(np.asarray(value.values), name=value.name or attr_name)
        if isinstance(value, np.ndarray):
            if value.ndim == 0:
                return value.item()
            return value.tolist()
        if isinstance(value, np.generic):
            return value.item()
        if isinstance(value, tuple):
            return [_convert_attr_value(attr_name, item) for item in value]
        if isinstance(value, list):
            return [_convert_attr_value(attr_name, item) for item in value]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value

    serialized_nodes = []
    value_infos = []
    output_names = {out.name for out in graph.outputs}
    for node in graph.nodes:
        attrs: Dict[str, Any] = {}
        for key, value in node.attrs.items():
            converted = _convert_attr_value(key, value)
            if converted is not None:
                attrs[key] = converted
        serialized_nodes.append(
            helper.make_node(
                node.op,
                [inp.name for inp in node.inputs],
                [out.name for out in node.outputs],
                name=node.name,
                **attrs,
            )
        )
        for out in node.outputs:
            if out.name != "" and out.dtype is not None and out.name not in output_names:
                value_infos.append(_make_value_info(out))

    initializers = []
    serialized_inputs = []
    for graph_input in graph.inputs:
        if graph_input.name == "":
            continue
        if graph_input.name in params:
            initializers.append(
                numpy_helper.from_array(np.asarray(params[graph_input.name]), name=graph_input.name)
            )
            continue
        serialized_inputs.append(_make_value_info(graph_input))

    serialized_outputs = [_make_value_info(out) for out in graph.outputs if out.name != ""]

    return helper.make_graph(
        nodes=serialized_nodes,
        name=graph.name or "graph",
        inputs=serialized_inputs,
        outputs=serialized_outputs,
        initializer=initializers,
        value_info=value_infos,
    )


def export_onnx(graph: Graph, params: Optional[ParamMap] = None, **kwargs: Any) -> onnx.ModelProto:
    if not isinstance(graph, Graph):
        raise TypeError("export_onnx expects a Graph")

    opset = int(getattr(graph, "opset", 13) or 13)
    graph_proto = _export_graph_proto(graph, params if params is not None else {})
    model = helper.make_model(
        graph_proto,
        opset_imports=[helper.make_opsetid("", opset)],
    )

    for key, value in kwargs.items():
        if hasattr(model, key):
            setattr(model, key, value)
    return model


__all__ = [
    "Graph",
    "Node",
    "NodeIterator",
    "ParamMap",
    "Use",
    "Variable",
    "Constant",
    "import_onnx",
    "export_onnx",
]
