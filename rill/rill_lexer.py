"""
Turns Rill source text into a flat list of tokens.

Every token records the 1-based line and column where it starts. The list
always ends with an EOF token so the parser can peek past the last real
token without bounds checks.
"""
from dataclasses import dataclass
from enum import Enum, auto
from fractions import Fraction
from typing import Any, List

from rill.rill_errors import UnexpectedToken, UnterminatedConstruct


class TokenKind(Enum):
    # Literals and names
    IDENTIFIER = auto()
    NUMBER = auto()
    STRING = auto()
    TEMPLATE = auto()
    TRUE = auto()
    FALSE = auto()
    VOID = auto()

    # Keywords
    VAL = auto()
    VAR = auto()
    FUN = auto()
    RETURN = auto()
    IF = auto()
    ELSE = auto()
    FOR = auto()
    IN = auto()
    STRUCT = auto()
    IMPL = auto()
    PUB = auto()
    IMPORT = auto()

    # Operators
    ASSIGN = auto()      # =
    EQ = auto()          # ==
    NEQ = auto()         # !=
    LT = auto()
    LTE = auto()
    GT = auto()
    GTE = auto()
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    SLASH = auto()
    ARROW = auto()       # ->
    ROCKET = auto()      # =>
    BACKSLASH = auto()
    PIPE = auto()
    DOT = auto()
    DOUBLE_COLON = auto()

    # Punctuation
    COLON = auto()
    COMMA = auto()
    SEMICOLON = auto()
    LPAREN = auto()
    RPAREN = auto()
    LBRACE = auto()
    RBRACE = auto()
    LBRACKET = auto()
    RBRACKET = auto()

    EOF = auto()


KEYWORDS = {
    "val": TokenKind.VAL,
    "var": TokenKind.VAR,
    "fun": TokenKind.FUN,
    "return": TokenKind.RETURN,
    "if": TokenKind.IF,
    "else": TokenKind.ELSE,
    "for": TokenKind.FOR,
    "in": TokenKind.IN,
    "struct": TokenKind.STRUCT,
    "impl": TokenKind.IMPL,
    "pub": TokenKind.PUB,
    "import": TokenKind.IMPORT,
    "true": TokenKind.TRUE,
    "false": TokenKind.FALSE,
    "void": TokenKind.VOID,
}

# Longest operators first so "==" wins over "=".
OPERATORS = [
    ("==", TokenKind.EQ),
    ("!=", TokenKind.NEQ),
    ("<=", TokenKind.LTE),
    (">=", TokenKind.GTE),
    ("->", TokenKind.ARROW),
    ("=>", TokenKind.ROCKET),
    ("::", TokenKind.DOUBLE_COLON),
    ("=", TokenKind.ASSIGN),
    ("<", TokenKind.LT),
    (">", TokenKind.GT),
    ("+", TokenKind.PLUS),
    ("-", TokenKind.MINUS),
    ("*", TokenKind.STAR),
    ("/", TokenKind.SLASH),
    ("\\", TokenKind.BACKSLASH),
    ("|", TokenKind.PIPE),
    (".", TokenKind.DOT),
    (":", TokenKind.COLON),
    (",", TokenKind.COMMA),
    (";", TokenKind.SEMICOLON),
    ("(", TokenKind.LPAREN),
    (")", TokenKind.RPAREN),
    ("{", TokenKind.LBRACE),
    ("}", TokenKind.RBRACE),
    ("[", TokenKind.LBRACKET),
    ("]", TokenKind.RBRACKET),
]

ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Any = None
    line: int = 0
    column: int = 0

    def __repr__(self) -> str:
        if self.value is None:
            return f"Token({self.kind.name} @{self.line}:{self.column})"
        return f"Token({self.kind.name} {self.value!r} @{self.line}:{self.column})"


def is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


class Lexer:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.line = 1
        self.column = 1

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.text[i] if i < len(self.text) else ""

    def _advance(self, count: int = 1) -> str:
        chunk = self.text[self.pos:self.pos + count]
        for ch in chunk:
            if ch == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        self.pos += count
        return chunk

    def _skip_trivia(self):
        while self.pos < len(self.text):
            ch = self._peek()
            if ch in " \t\r\n":
                self._advance()
            elif ch == "/" and self._peek(1) == "/":
                while self.pos < len(self.text) and self._peek() != "\n":
                    self._advance()
            elif ch == "/" and self._peek(1) == "*":
                line, column = self.line, self.column
                self._advance(2)
                while not (self._peek() == "*" and self._peek(1) == "/"):
                    if self.pos >= len(self.text):
                        raise UnterminatedConstruct("unterminated block comment", line, column)
                    self._advance()
                self._advance(2)
            else:
                return

    def _read_number(self, line: int, column: int) -> Token:
        start = self.pos
        while is_digit(self._peek()):
            self._advance()
        if self._peek() == "." and is_digit(self._peek(1)):
            self._advance()
            while is_digit(self._peek()):
                self._advance()
        text = self.text[start:self.pos]
        # Fraction parses the decimal text exactly; no float round trip.
        return Token(TokenKind.NUMBER, Fraction(text), line, column)

    def _read_string(self, line: int, column: int) -> str:
        self._advance()  # opening quote
        out = []
        while True:
            ch = self._peek()
            if ch == "":
                raise UnterminatedConstruct("unterminated string literal", line, column)
            if ch == '"':
                self._advance()
                return "".join(out)
            if ch == "\\":
                nxt = self._peek(1)
                if nxt in ESCAPES:
                    out.append(ESCAPES[nxt])
                    self._advance(2)
                    continue
            out.append(self._advance())

    def _read_word(self, line: int, column: int) -> Token:
        start = self.pos
        while self._peek().isalnum() or self._peek() == "_":
            self._advance()
        word = self.text[start:self.pos]
        kind = KEYWORDS.get(word)
        if kind is not None:
            return Token(kind, None, line, column)
        return Token(TokenKind.IDENTIFIER, word, line, column)

    def tokens(self) -> List[Token]:
        out: List[Token] = []
        while True:
            self._skip_trivia()
            line, column = self.line, self.column
            ch = self._peek()
            if ch == "":
                out.append(Token(TokenKind.EOF, None, line, column))
                return out
            if is_digit(ch):
                out.append(self._read_number(line, column))
                continue
            if ch == '"':
                out.append(Token(TokenKind.STRING, self._read_string(line, column), line, column))
                continue
            if ch == "i" and self._peek(1) == '"':
                self._advance()
                out.append(Token(TokenKind.TEMPLATE, self._read_string(line, column), line, column))
                continue
            if ch.isalpha() or ch == "_":
                out.append(self._read_word(line, column))
                continue
            for text, kind in OPERATORS:
                if self.text.startswith(text, self.pos):
                    self._advance(len(text))
                    out.append(Token(kind, None, line, column))
                    break
            else:
                raise UnexpectedToken(f"unexpected character {ch!r}", line, column)


def tokenize(text: str) -> List[Token]:
    """Tokenize source text; the result always ends with an EOF token."""
    return Lexer(text).tokens()
