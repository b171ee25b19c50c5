"""Built-in node handlers."""

from .builtin import BUILTIN_NODES, register_builtin_nodes

__all__ = ["BUILTIN_NODES", "register_builtin_nodes"]
