from .base import NodeKindRegistry, NodeKindSpec
from .builtin import register_builtin_kinds

__all__ = ["NodeKindRegistry", "NodeKindSpec", "register_builtin_kinds"]
