"""Label expression matching.

A requested label is an expression over label atoms::

    linux && (x86 || arm) && !gpu

A VM's labels are a whitespace-separated set of atoms. The expression
matches when it evaluates true against that set.
"""

from __future__ import annotations

import re

_TOKEN_RE = re.compile(r"\s*(&&|\|\||!|\(|\)|[^\s&|!()]+)")


class LabelExpressionError(ValueError):
    pass


def _tokenize(expr: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    expr = expr.strip()
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise LabelExpressionError(f"Invalid label expression: {expr!r}")
        tokens.append(m.group(1))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[str], atoms: set[str]) -> None:
        self.tokens = tokens
        self.atoms = atoms
        self.pos = 0

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        tok = self._peek()
        if tok is None:
            raise LabelExpressionError("Unexpected end of label expression")
        self.pos += 1
        return tok

    def parse(self) -> bool:
        result = self._or()
        if self._peek() is not None:
            raise LabelExpressionError(f"Unexpected token {self._peek()!r}")
        return result

    def _or(self) -> bool:
        result = self._and()
        while self._peek() == "||":
            self._take()
            rhs = self._and()
            result = result or rhs
        return result

    def _and(self) -> bool:
        result = self._not()
        while self._peek() == "&&":
            self._take()
            rhs = self._not()
            result = result and rhs
        return result

    def _not(self) -> bool:
        if self._peek() == "!":
            self._take()
            return not self._not()
        return self._primary()

    def _primary(self) -> bool:
        tok = self._take()
        if tok == "(":
            result = self._or()
            if self._take() != ")":
                raise LabelExpressionError("Missing closing parenthesis")
            return result
        if tok in ("&&", "||", ")"):
            raise LabelExpressionError(f"Unexpected token {tok!r}")
        return tok in self.atoms


def labels_match(requested: str | None, labels: str) -> bool:
    """Return True if the requested label expression is satisfied by ``labels``.

    ``None`` or an empty expression places no constraint.
    """
    if requested is None or not requested.strip():
        return True
    return _Parser(_tokenize(requested), set(labels.split())).parse()
