from types import SimpleNamespace
from typing import Any, TypeVar

import jax.tree_util as jtu

__all__ = [
    "TreeNamespace",
    "dict_to_namespace",
    "namespace_to_dict",
]


TNS_REPR_INDENT_STR = "  "


NT = TypeVar("NT", bound=SimpleNamespace)


def _convert_value(value: Any, to_type: type, from_type: type) -> Any:
    if isinstance(value, from_type):
        if isinstance(value, SimpleNamespace):
            value = vars(value)
        if not isinstance(value, dict):
            raise ValueError(f"Expected a dict or namespace, got {type(value)}")
        return to_type(**{str(k): _convert_value(v, to_type, from_type) for k, v in value.items()})

    elif isinstance(value, (list, tuple)):
        return type(value)(_convert_value(v, to_type, from_type) for v in value)

    return value


def dict_to_namespace(d: dict, to_type: type[NT] = SimpleNamespace) -> NT:
    """Convert a nested dictionary to a nested SimpleNamespace.

    This is the inverse operation of namespace_to_dict.
    """
    return _convert_value(d, to_type=to_type, from_type=dict)


def namespace_to_dict(ns: SimpleNamespace) -> dict:
    """Convert a nested SimpleNamespace to a nested dictionary.

    This is the inverse operation of dict_to_namespace.
    """
    return _convert_value(ns, to_type=dict, from_type=SimpleNamespace)


@jtu.register_pytree_with_keys_class
class TreeNamespace(SimpleNamespace):
    """A simple namespace that's a PyTree.

    This is useful when we want to attribute-like access to the data in
    a nested dict. For example, `config['solver']['num_mesh_points']`
    becomes `TreeNamespace(**config).solver.num_mesh_points`.
    """

    def tree_flatten_with_keys(self):
        children_with_keys = [(jtu.GetAttrKey(k), v) for k, v in self.__dict__.items()]
        aux_data = self.__dict__.keys()
        return children_with_keys, aux_data

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(**dict(zip(aux_data, children)))

    def __repr__(self):
        return self._repr_with_indent(0)

    def _repr_with_indent(self, level):
        cls_name = self.__class__.__name__
        if not any(self.__dict__):
            return f"{cls_name}()"

        attr_strs = []
        for name, attr in self.__dict__.items():
            if isinstance(attr, TreeNamespace):
                attr_repr = attr._repr_with_indent(level + 1)
            else:
                attr_repr = repr(attr)
            attr_strs.append(f"{name}={attr_repr},")

        current_indent = TNS_REPR_INDENT_STR * level
        inner_str = "\n".join(current_indent + TNS_REPR_INDENT_STR + s for s in attr_strs)

        return f"{cls_name}(\n" + inner_str + f"\n{current_indent})"

