from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from lark import Lark, Token as LarkToken
from lark.exceptions import UnexpectedCharacters

from .ast import SourcePos
from .errors import LexError

GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")

KEYWORDS = frozenset({
    "DEF", "IF", "ELIF", "ELSE", "WHILE", "FOR", "IN", "PARALLEL", "SYNC", "AWAIT",
    "ALL", "ANY", "NONE", "CHECKPOINT", "RECOVER", "GATE", "RETURN", "BREAK",
    "TRUE", "FALSE", "AND", "OR", "NOT",
})
OPERATORS = frozenset({"COMP_OP", "ADD_OP", "MUL_OP", "EQUAL", "_ARROW", "DOT"})

_lark: Optional[Lark] = None


def load_grammar() -> Lark:
    global _lark
    if _lark is None:
        grammar = GRAMMAR_PATH.read_text(encoding="utf-8")
        _lark = Lark(
            grammar,
            start="start",
            parser="lalr",
            lexer="basic",
            maybe_placeholders=True,
            propagate_positions=True,
        )
    return _lark


class TokenKind(str, Enum):
    IDENTIFIER = "identifier"
    KEYWORD = "keyword"
    OPERATOR = "operator"
    STRING = "string-literal"
    NUMBER = "number-literal"
    ANNOTATION = "annotation"
    DIRECTIVE = "directive"
    DELIMITER = "delimiter"


def _kind_of(terminal: str) -> TokenKind:
    if terminal in KEYWORDS:
        return TokenKind.KEYWORD
    if terminal in OPERATORS:
        return TokenKind.OPERATOR
    if terminal == "NAME":
        return TokenKind.IDENTIFIER
    if terminal == "STRING":
        return TokenKind.STRING
    if terminal == "NUMBER":
        return TokenKind.NUMBER
    if terminal == "ANNOTATION":
        return TokenKind.ANNOTATION
    if terminal == "DIRECTIVE":
        return TokenKind.DIRECTIVE
    return TokenKind.DELIMITER


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    pos: SourcePos
    type: str
    offset: int = 0

    def to_lark(self) -> LarkToken:
        end_col = self.pos.column + len(self.text)
        return LarkToken(
            self.type,
            self.text,
            start_pos=self.offset,
            line=self.pos.line,
            column=self.pos.column,
            end_line=self.pos.line,
            end_column=end_col,
            end_pos=self.offset + len(self.text),
        )


def tokenize(source: str) -> List[Token]:
    """Split PNL source text into typed tokens.

    Whitespace and ``//`` comments are skipped; any character no terminal
    accepts raises ``LexError`` carrying its line and column.
    """
    lark = load_grammar()
    tokens: List[Token] = []
    try:
        for tok in lark.lex(source):
            tokens.append(Token(
                kind=_kind_of(tok.type),
                text=str(tok),
                pos=SourcePos(tok.line, tok.column),
                type=tok.type,
                offset=tok.start_pos or 0,
            ))
    except UnexpectedCharacters as e:
        raise LexError(SourcePos(e.line, e.column), e.char) from None
    return tokens
