"""Enclosing-symbol lookup used to annotate ambiguous patch locations."""

from __future__ import annotations

import ast
import logging

LOGGER = logging.getLogger(__name__)

_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


class PythonSymbolLookup:
    """Resolve the innermost class/function chain around a line of Python source."""

    def enclosing_symbol(self, path: str, content: str, line: int) -> str | None:
        if not path.endswith((".py", ".pyi")):
            return None
        try:
            tree = ast.parse(content)
        except SyntaxError:
            LOGGER.debug("Unable to parse %s for symbol lookup", path)
            return None

        chain: list[str] = []
        nodes: list[ast.AST] = list(tree.body)
        while nodes:
            match = None
            for node in nodes:
                if not isinstance(node, _SCOPE_NODES):
                    continue
                start = min([node.lineno, *(decorator.lineno for decorator in node.decorator_list)])
                end = getattr(node, "end_lineno", None) or node.lineno
                if start <= line <= end:
                    match = node
                    break
            if match is None:
                break
            chain.append(match.name)
            nodes = list(match.body)
        return " > ".join(chain) if chain else None


__all__ = ["PythonSymbolLookup"]
