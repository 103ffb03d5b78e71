"""Tests for the filter expression lexer and parser."""

import pytest

from buildnotify.cel import nodes
from buildnotify.cel.lexer import LexError, tokenize
from buildnotify.cel.parser import MAX_DEPTH, ParseError, parse


class TestLexer:
    def test_tokens(self):
        tokens = tokenize('build.status in ["a", r"\\d"] && 0x1F >= 2.5e1 // trailing')
        kinds = [(t.kind, t.value) for t in tokens]
        assert kinds == [
            ("IDENT", "build"),
            ("OP", "."),
            ("IDENT", "status"),
            ("KEYWORD", "in"),
            ("OP", "["),
            ("STRING", "a"),
            ("OP", ","),
            ("STRING", "\\d"),
            ("OP", "]"),
            ("OP", "&&"),
            ("INT", 31),
            ("OP", ">="),
            ("DOUBLE", 25.0),
            ("EOF", None),
        ]

    @pytest.mark.parametrize(
        "text, expected",
        [
            (r'"tab\there"', "tab\there"),
            (r"'\x41é\101'", "Aé\x41"),
            ('"""multi\nline"""', "multi\nline"),
            ("'it\\'s'", "it's"),
        ],
    )
    def test_string_literals(self, text, expected):
        assert tokenize(text)[0].value == expected

    @pytest.mark.parametrize("text", ['"unterminated', "'a\nb'", r'"\q"', "a # b", "0x"])
    def test_rejected(self, text):
        with pytest.raises(LexError):
            tokenize(text)


class TestParser:
    def test_precedence(self):
        tree = parse("a || b && c == 1 + 2 * 3")
        assert isinstance(tree, nodes.Binary) and tree.op == "||"
        right = tree.right
        assert right.op == "&&"
        assert right.right.op == "=="
        assert right.right.right.op == "+"
        assert right.right.right.right.op == "*"

    def test_member_call_and_index(self):
        tree = parse('build.steps[0].name.startsWith("gcr.io")')
        assert isinstance(tree, nodes.Call)
        assert tree.function == "startsWith"
        assert isinstance(tree.target, nodes.Select)
        assert isinstance(tree.target.operand, nodes.Index)

    def test_macros(self):
        tree = parse("build.tags.exists(t, t == 'x')")
        assert isinstance(tree, nodes.Comprehension)
        assert (tree.macro, tree.var) == ("exists", "t")
        assert isinstance(parse("has(build.source)"), nodes.Has)

    def test_qualified_name(self):
        assert nodes.qualified_name(parse("Build.Status.SUCCESS")) == "Build.Status.SUCCESS"
        assert nodes.qualified_name(parse("build.steps[0].name")) is None

    def test_negative_literal_folds(self):
        tree = parse("-5")
        assert isinstance(tree, nodes.Literal) and tree.value == -5

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "a ==",
            "(a",
            "a b",
            "has(a)",
            "a.exists(1, true)",
            "a.map(x)",
            "a ? b",
            "a.1",
        ],
    )
    def test_rejected(self, text):
        with pytest.raises(ParseError):
            parse(text)

    def test_depth_limit(self):
        assert parse("(" * (MAX_DEPTH - 1) + "a" + ")" * (MAX_DEPTH - 1))
        with pytest.raises(ParseError, match="nested too deeply"):
            parse("(" * (MAX_DEPTH + 1) + "a" + ")" * (MAX_DEPTH + 1))

    def test_unary_chain_depth_limit(self):
        assert parse("!" * (MAX_DEPTH - 2) + "true")
        with pytest.raises(ParseError, match="nested too deeply"):
            parse("!" * (MAX_DEPTH + 1) + "true")

    @pytest.mark.parametrize("digit", ["\u00b2", "\u0661", "\uff11"])
    def test_non_ascii_digits_are_not_numbers(self, digit):
        with pytest.raises(LexError):
            tokenize(f"1 == {digit}")
