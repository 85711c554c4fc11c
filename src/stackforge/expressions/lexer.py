#!/usr/bin/env python3
"""
STACKFORGE LEXER - Template & Token Sharder
-------------------------------------------
Two jobs:

1. Split a configuration string into literal text and ${...} interpolation
   shards, protecting quotes and nested braces inside the interpolation.
2. Decompose one interpolation body into a flat list of Tokens for the
   recursive-descent parser.

Author: Stackforge Team
Date: 2026-10-18
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

from stackforge.core.errors import ExpressionSyntaxError


@dataclass(frozen=True)
class Token:
    kind: str       # NUMBER, STRING, IDENT, OP or EOF
    value: object   # Decoded payload (int/float for NUMBER, str otherwise)
    pos: int        # Offset in the source text, for error messages


class ExpressionLexer:
    """
    Turns expression source into Tokens. Stateless apart from the text being
    scanned, so a single instance can be shared.
    """

    NUMBER_PATTERN = re.compile(r'\d+(\.\d+)?([eE][+-]?\d+)?')
    IDENT_PATTERN = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
    # Longest operators first so '==' is not read as '=' '='
    OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "=>",
                 "+", "-", "*", "/", "%", "<", ">", "!", "?", ":",
                 ".", ",", "[", "]", "(", ")", "{", "}", "=")
    ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}

    def tokenize(self, text: str) -> List[Token]:
        tokens = []
        i = 0
        while i < len(text):
            char = text[i]
            if char.isspace():
                i += 1
                continue
            if char == '"':
                value, i_next = self._read_string(text, i)
                tokens.append(Token("STRING", value, i))
                i = i_next
                continue
            match = self.NUMBER_PATTERN.match(text, i)
            if match:
                raw = match.group(0)
                number = float(raw) if (match.group(1) or match.group(2)) else int(raw)
                tokens.append(Token("NUMBER", number, i))
                i = match.end()
                continue
            match = self.IDENT_PATTERN.match(text, i)
            if match:
                tokens.append(Token("IDENT", match.group(0), i))
                i = match.end()
                continue
            for op in self.OPERATORS:
                if text.startswith(op, i):
                    tokens.append(Token("OP", op, i))
                    i += len(op)
                    break
            else:
                raise ExpressionSyntaxError(f"unexpected character {char!r} at offset {i} in {text!r}")
        tokens.append(Token("EOF", None, len(text)))
        return tokens

    def _read_string(self, text: str, start: int) -> Tuple[str, int]:
        """Decodes a double-quoted string. Returns (value, index after closing quote)."""
        out = []
        i = start + 1
        while i < len(text):
            char = text[i]
            if char == "\\":
                if i + 1 >= len(text):
                    break
                escaped = text[i + 1]
                out.append(self.ESCAPES.get(escaped, escaped))
                i += 2
                continue
            if char == '"':
                return "".join(out), i + 1
            out.append(char)
            i += 1
        raise ExpressionSyntaxError(f"unterminated string starting at offset {start} in {text!r}")


def split_template(text: str) -> List[Tuple[bool, str]]:
    """
    Splits "web-${count.index}" into [(False, "web-"), (True, "count.index")].
    `$${` is an escaped literal "${".
    """
    shards: List[Tuple[bool, str]] = []
    literal: List[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            literal.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _find_closing_brace(text, i + 2)
            if literal:
                shards.append((False, "".join(literal)))
                literal = []
            body = text[i + 2:end].strip()
            if not body:
                raise ExpressionSyntaxError(f"empty interpolation in {text!r}")
            shards.append((True, body))
            i = end + 1
            continue
        literal.append(text[i])
        i += 1
    if literal:
        shards.append((False, "".join(literal)))
    return shards


def _find_closing_brace(text: str, start: int) -> int:
    """Protects quoted strings and nested {...} maps inside the interpolation."""
    depth = 0
    in_string = escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if escaped:
            escaped = False
            continue
        if in_string:
            if char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            if depth == 0:
                return i
            depth -= 1
    raise ExpressionSyntaxError(f"unterminated interpolation in {text!r}")
