"""Tokenizer for filter expressions."""

from dataclasses import dataclass

KEYWORDS = frozenset({"true", "false", "null", "in"})

# Longest operators first so `<=` is not read as `<` `=`.
OPERATORS = (
    "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "!", "+", "-", "*", "/", "%", "?", ":", ".", ",",
    "[", "]", "(", ")", "{", "}",
)

_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "`": "`",
    "?": "?",
}


class LexError(Exception):
    def __init__(self, message: str, pos: int) -> None:
        self.pos = pos
        super().__init__(f"{message} at position {pos}")


@dataclass(frozen=True)
class Token:
    kind: str  # IDENT, INT, DOUBLE, STRING, KEYWORD, OP or EOF
    value: object
    pos: int


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if text.startswith("//", i):
            nl = text.find("\n", i)
            i = n if nl == -1 else nl + 1
            continue

        start = i
        if ch in "rR" and i + 1 < n and text[i + 1] in "'\"":
            value, i = _read_string(text, i + 1, raw=True)
            tokens.append(Token("STRING", value, start))
            continue
        if ch in "'\"":
            value, i = _read_string(text, i, raw=False)
            tokens.append(Token("STRING", value, start))
            continue
        if _is_digit(ch) or (ch == "." and i + 1 < n and _is_digit(text[i + 1])):
            token, i = _read_number(text, i)
            tokens.append(token)
            continue
        if ch.isalpha() or ch == "_":
            while i < n and (text[i].isalnum() or text[i] == "_"):
                i += 1
            word = text[start:i]
            kind = "KEYWORD" if word in KEYWORDS else "IDENT"
            tokens.append(Token(kind, word, start))
            continue

        for op in OPERATORS:
            if text.startswith(op, i):
                tokens.append(Token("OP", op, start))
                i += len(op)
                break
        else:
            raise LexError(f"unexpected character {ch!r}", i)

    tokens.append(Token("EOF", None, n))
    return tokens


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _read_number(text: str, i: int) -> tuple[Token, int]:
    start = i
    n = len(text)
    if text.startswith(("0x", "0X"), i):
        i += 2
        while i < n and text[i] in "0123456789abcdefABCDEF":
            i += 1
        if i == start + 2:
            raise LexError("malformed hex literal", start)
        value = int(text[start + 2:i], 16)
        if i < n and text[i] in "uU":
            i += 1
        return Token("INT", value, start), i

    while i < n and _is_digit(text[i]):
        i += 1
    is_double = False
    if i < n and text[i] == "." and i + 1 < n and _is_digit(text[i + 1]):
        is_double = True
        i += 1
        while i < n and _is_digit(text[i]):
            i += 1
    if i < n and text[i] in "eE":
        j = i + 1
        if j < n and text[j] in "+-":
            j += 1
        if j < n and _is_digit(text[j]):
            is_double = True
            i = j
            while i < n and _is_digit(text[i]):
                i += 1
    literal = text[start:i]
    if is_double:
        return Token("DOUBLE", float(literal), start), i
    if i < n and text[i] in "uU":
        i += 1
    return Token("INT", int(literal), start), i


def _read_string(text: str, i: int, raw: bool) -> tuple[str, int]:
    start = i
    n = len(text)
    quote = text[i]
    triple = text.startswith(quote * 3, i)
    delim = quote * 3 if triple else quote
    i += len(delim)
    out: list[str] = []
    while True:
        if i >= n:
            raise LexError("unterminated string literal", start)
        if text.startswith(delim, i):
            return "".join(out), i + len(delim)
        ch = text[i]
        if ch == "\n" and not triple:
            raise LexError("newline in string literal", i)
        if ch == "\\" and not raw:
            value, i = _read_escape(text, i)
            out.append(value)
            continue
        out.append(ch)
        i += 1


def _read_escape(text: str, i: int) -> tuple[str, int]:
    if i + 1 >= len(text):
        raise LexError("unterminated escape sequence", i)
    ch = text[i + 1]
    if ch in _ESCAPES:
        return _ESCAPES[ch], i + 2
    widths = {"x": 2, "X": 2, "u": 4, "U": 8}
    if ch in widths:
        digits = text[i + 2:i + 2 + widths[ch]]
        if len(digits) != widths[ch] or any(c not in "0123456789abcdefABCDEF" for c in digits):
            raise LexError(f"malformed \\{ch} escape", i)
        return chr(int(digits, 16)), i + 2 + widths[ch]
    digits = text[i + 1:i + 4]
    if len(digits) == 3 and all(c in "01234567" for c in digits):
        return chr(int(digits, 8)), i + 4
    raise LexError(f"invalid escape sequence \\{ch}", i)
