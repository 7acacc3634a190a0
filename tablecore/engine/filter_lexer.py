"""Lexer for textual record filters such as ``(status = 'open') and (id in (1,2))``."""

from __future__ import annotations

from typing import List

import ply.lex as lex

from tablecore.domain.errors import BadRequestError


class FilterLexer:
    """Tokenizes filter strings; keywords are left as WORD tokens for the parser."""

    tokens = [
        "LPAREN",
        "RPAREN",
        "COMMA",
        "STRING",
        "FLOAT",
        "INTEGER",
        "PARAM",
        "SYMBOL",
        "WORD",
    ]

    t_LPAREN = r"\("
    t_RPAREN = r"\)"
    t_COMMA = r","
    t_SYMBOL = r"!=|<>|>=|<=|=|>|<"

    t_ignore = " \t\r\n"

    def __init__(self) -> None:
        self.lexer = lex.lex(module=self, optimize=False, debug=False)

    def t_STRING(self, t: lex.LexToken) -> lex.LexToken:
        r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\""
        quote = t.value[0]
        t.value = t.value[1:-1].replace(quote * 2, quote)
        return t

    def t_FLOAT(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+\.\d+(?![A-Za-z_])"
        t.value = float(t.value)
        return t

    def t_INTEGER(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+(?![A-Za-z_.])"
        t.value = int(t.value)
        return t

    def t_PARAM(self, t: lex.LexToken) -> lex.LexToken:
        r":[A-Za-z_][A-Za-z0-9_]*"
        t.value = t.value[1:]
        return t

    def t_WORD(self, t: lex.LexToken) -> lex.LexToken:
        r"[A-Za-z_{\[][A-Za-z0-9_.{}\[\]@-]*"
        return t

    def t_error(self, t: lex.LexToken) -> None:
        raise BadRequestError(f"Invalid character '{t.value[0]}' in filter at position {t.lexpos}.")

    def tokenize(self, text: str) -> List[lex.LexToken]:
        self.lexer.input(text)
        return list(iter(self.lexer.token, None))


__all__ = ["FilterLexer"]
