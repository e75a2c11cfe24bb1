"""Top-level grammar checks run before instrumentation."""

from __future__ import annotations

from collections.abc import Iterable

from threadweave.errors import UnsupportedSyntax
from threadweave.nodes import Directive, Statement, Unsupported

MODULE_CONSTRUCTS = frozenset({"ImportDeclaration", "ExportNamedDeclaration", "ExportDefaultDeclaration"})


def validate_top_level(body: Iterable[Statement]) -> None:
    """Reject directives and module declarations among top-level statements.

    Raises:
        UnsupportedSyntax: Naming the first offending construct.
    """
    for node in body:
        if isinstance(node, Directive):
            raise UnsupportedSyntax("Directive", node.line)
        if isinstance(node, Unsupported) and node.construct in MODULE_CONSTRUCTS:
            raise UnsupportedSyntax(node.construct, node.line)
