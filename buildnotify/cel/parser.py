"""Recursive descent parser for filter expressions.

Grammar, lowest precedence first:

    expr     = or ["?" or ":" expr]
    or       = and {"||" and}
    and      = relation {"&&" relation}
    relation = addition {("<"|"<="|">"|">="|"=="|"!="|"in") addition}
    addition = multiply {("+"|"-") multiply}
    multiply = unary {("*"|"/"|"%") unary}
    unary    = member | "!" {"!"} member | "-" {"-"} member
    member   = primary {"." IDENT ["(" args ")"] | "[" expr "]"}
    primary  = IDENT ["(" args ")"] | "(" expr ")" | "[" args "]"
             | "{" entries "}" | literal
"""

from buildnotify.cel import nodes
from buildnotify.cel.lexer import Token, tokenize

RELATIONS = ("<", "<=", ">", ">=", "==", "!=", "in")

_COMPREHENSIONS = {"all", "exists", "exists_one", "map", "filter"}

# Guards against pathological nesting in user-supplied filters.
MAX_DEPTH = 32


class ParseError(Exception):
    def __init__(self, message: str, pos: int) -> None:
        self.pos = pos
        super().__init__(f"{message} at position {pos}")


def parse(text: str) -> nodes.Node:
    return _Parser(tokenize(text)).parse()


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._i = 0
        self._depth = 0

    def parse(self) -> nodes.Node:
        if self._peek().kind == "EOF":
            raise ParseError("empty expression", 0)
        node = self._expr()
        tok = self._peek()
        if tok.kind != "EOF":
            raise ParseError(f"unexpected {_describe(tok)}", tok.pos)
        return node

    def _peek(self) -> Token:
        return self._tokens[self._i]

    def _advance(self) -> Token:
        tok = self._tokens[self._i]
        self._i += 1
        return tok

    def _at_op(self, *ops: str) -> bool:
        tok = self._peek()
        return tok.kind == "OP" and tok.value in ops

    def _expect_op(self, op: str) -> Token:
        tok = self._advance()
        if tok.kind != "OP" or tok.value != op:
            raise ParseError(f"expected {op!r} but found {_describe(tok)}", tok.pos)
        return tok

    def _expr(self) -> nodes.Node:
        self._depth += 1
        if self._depth > MAX_DEPTH:
            raise ParseError("expression nested too deeply", self._peek().pos)
        try:
            cond = self._or()
            if self._at_op("?"):
                pos = self._advance().pos
                then = self._or()
                self._expect_op(":")
                otherwise = self._expr()
                return nodes.Conditional(pos, cond, then, otherwise)
            return cond
        finally:
            self._depth -= 1

    def _or(self) -> nodes.Node:
        node = self._and()
        while self._at_op("||"):
            pos = self._advance().pos
            node = nodes.Binary(pos, "||", node, self._and())
        return node

    def _and(self) -> nodes.Node:
        node = self._relation()
        while self._at_op("&&"):
            pos = self._advance().pos
            node = nodes.Binary(pos, "&&", node, self._relation())
        return node

    def _relation(self) -> nodes.Node:
        node = self._addition()
        while True:
            tok = self._peek()
            if (tok.kind == "OP" and tok.value in RELATIONS) or (
                tok.kind == "KEYWORD" and tok.value == "in"
            ):
                self._advance()
                node = nodes.Binary(tok.pos, tok.value, node, self._addition())
            else:
                return node

    def _addition(self) -> nodes.Node:
        node = self._multiply()
        while self._at_op("+", "-"):
            tok = self._advance()
            node = nodes.Binary(tok.pos, tok.value, node, self._multiply())
        return node

    def _multiply(self) -> nodes.Node:
        node = self._unary()
        while self._at_op("*", "/", "%"):
            tok = self._advance()
            node = nodes.Binary(tok.pos, tok.value, node, self._unary())
        return node

    def _unary(self) -> nodes.Node:
        if self._at_op("!", "-"):
            tok = self._advance()
            self._depth += 1
            if self._depth > MAX_DEPTH:
                raise ParseError("expression nested too deeply", tok.pos)
            try:
                operand = self._unary()
            finally:
                self._depth -= 1
            if tok.value == "-" and isinstance(operand, nodes.Literal):
                value = operand.value
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return nodes.Literal(tok.pos, -value)
            return nodes.Unary(tok.pos, tok.value, operand)
        return self._member()

    def _member(self) -> nodes.Node:
        node = self._primary()
        while True:
            if self._at_op("."):
                self._advance()
                tok = self._advance()
                if tok.kind != "IDENT":
                    raise ParseError(f"expected field name but found {_describe(tok)}", tok.pos)
                if self._at_op("("):
                    self._advance()
                    args = self._args(")")
                    node = self._member_call(tok, node, args)
                else:
                    node = nodes.Select(tok.pos, node, tok.value)
            elif self._at_op("["):
                pos = self._advance().pos
                index = self._expr()
                self._expect_op("]")
                node = nodes.Index(pos, node, index)
            else:
                return node

    def _member_call(self, tok: Token, target: nodes.Node, args: list[nodes.Node]) -> nodes.Node:
        name = tok.value
        if name not in _COMPREHENSIONS:
            return nodes.Call(tok.pos, name, target, tuple(args))

        expected = (2, 3) if name == "map" else (2,)
        if len(args) not in expected:
            raise ParseError(f"macro {name}() takes {' or '.join(map(str, expected))} arguments", tok.pos)
        var = args[0]
        if not isinstance(var, nodes.Ident):
            raise ParseError(f"macro {name}() needs a variable name as its first argument", var.pos)
        if len(args) == 3:
            return nodes.Comprehension(tok.pos, name, target, var.name, args[1], args[2])
        return nodes.Comprehension(tok.pos, name, target, var.name, None, args[1])

    def _primary(self) -> nodes.Node:
        tok = self._advance()
        if tok.kind in ("INT", "DOUBLE", "STRING"):
            return nodes.Literal(tok.pos, tok.value)
        if tok.kind == "KEYWORD":
            if tok.value == "true":
                return nodes.Literal(tok.pos, True)
            if tok.value == "false":
                return nodes.Literal(tok.pos, False)
            if tok.value == "null":
                return nodes.Literal(tok.pos, None)
            raise ParseError(f"unexpected {_describe(tok)}", tok.pos)
        if tok.kind == "IDENT":
            if self._at_op("("):
                self._advance()
                args = self._args(")")
                if tok.value == "has":
                    if len(args) != 1 or not isinstance(args[0], nodes.Select):
                        raise ParseError("has() requires a single field selection argument", tok.pos)
                    return nodes.Has(tok.pos, args[0])
                return nodes.Call(tok.pos, tok.value, None, tuple(args))
            return nodes.Ident(tok.pos, tok.value)
        if tok.kind == "OP":
            if tok.value == "(":
                node = self._expr()
                self._expect_op(")")
                return node
            if tok.value == "[":
                return nodes.ListExpr(tok.pos, tuple(self._args("]")))
            if tok.value == "{":
                return nodes.MapExpr(tok.pos, tuple(self._entries()))
        raise ParseError(f"unexpected {_describe(tok)}", tok.pos)

    def _args(self, close: str) -> list[nodes.Node]:
        args: list[nodes.Node] = []
        if self._at_op(close):
            self._advance()
            return args
        while True:
            args.append(self._expr())
            if self._at_op(","):
                self._advance()
                if self._at_op(close):
                    self._advance()
                    return args
                continue
            self._expect_op(close)
            return args

    def _entries(self) -> list[tuple[nodes.Node, nodes.Node]]:
        entries: list[tuple[nodes.Node, nodes.Node]] = []
        if self._at_op("}"):
            self._advance()
            return entries
        while True:
            key = self._expr()
            self._expect_op(":")
            entries.append((key, self._expr()))
            if self._at_op(","):
                self._advance()
                if self._at_op("}"):
                    self._advance()
                    return entries
                continue
            self._expect_op("}")
            return entries


def _describe(tok: Token) -> str:
    if tok.kind == "EOF":
        return "end of input"
    return repr(tok.value)
