"""
Unit tests for pattern splitting and expression classification.
"""

import pytest

from tablecraft.engine.parser import (
    AgainExpr,
    CaptureAccessExpr,
    CaptureMultiRollExpr,
    CollectExpr,
    DiceExpr,
    InstanceExpr,
    Literal,
    MathExpr,
    MultiRollExpr,
    PlaceholderExpr,
    Span,
    SwitchExpr,
    TableRefExpr,
    VariableExpr,
    parse_expression,
    parse_pattern,
    split_top_level,
)
from tablecraft.errors import ParseError, TableEngineError


class TestParsePattern:
    """Tests for splitting patterns into literals and spans."""

    def test_plain_text(self):
        assert parse_pattern("just text") == (Literal("just text"),)

    def test_literal_and_span(self):
        segments = parse_pattern("Hello {{name}}!")
        assert segments[0] == Literal("Hello ")
        assert segments[1] == Span(raw="{{name}}", inner="name", start=6, end=14)
        assert segments[2] == Literal("!")

    def test_adjacent_spans(self):
        segments = parse_pattern("{{a}}{{b}}")
        assert [s.inner for s in segments] == ["a", "b"]

    def test_nested_span_stays_in_one_segment(self):
        segments = parse_pattern('{{$x.switch[$=="a":"{{t}}"]}} end')
        assert isinstance(segments[0], Span)
        assert segments[0].inner == '$x.switch[$=="a":"{{t}}"]'
        assert segments[1] == Literal(" end")

    def test_unclosed_span(self):
        with pytest.raises(ParseError):
            parse_pattern("broken {{table")


class TestClassification:
    """Tests for parse_expression classification order."""

    def test_table_reference(self):
        assert parse_expression("colors") == TableRefExpr(ref="colors")

    def test_qualified_reference(self):
        assert parse_expression("names.greeting") == TableRefExpr(ref="names.greeting")

    def test_property_chain_on_reference(self):
        assert parse_expression("monster.@size") == TableRefExpr(ref="monster", properties=("size",))

    def test_whitespace_is_ignored(self):
        assert parse_expression("  colors  ") == TableRefExpr(ref="colors")

    def test_instance(self):
        assert parse_expression("npc#bob") == InstanceExpr(ref="npc", label="bob")

    def test_dice(self):
        assert parse_expression("dice:2d6+1") == DiceExpr(notation="2d6+1")

    def test_math(self):
        assert parse_expression("math:$a * 2") == MathExpr(expression="$a * 2")

    def test_literal_multi_roll(self):
        expr = parse_expression("3*colors")
        assert isinstance(expr, MultiRollExpr)
        assert expr.count.literal == 3
        assert expr.count.source == "literal"
        assert expr.ref == "colors"
        assert not expr.unique

    def test_variable_count(self):
        expr = parse_expression("$n*colors")
        assert isinstance(expr, MultiRollExpr)
        assert expr.count.variable == "n"
        assert expr.count.source == "variable"

    def test_dice_count(self):
        expr = parse_expression("1d4*colors")
        assert isinstance(expr, MultiRollExpr)
        assert expr.count.dice == "1d4"

    def test_separator_modifier(self):
        expr = parse_expression('3*colors|" and "')
        assert expr.separator == " and "

    def test_unique_prefix_and_infix(self):
        assert parse_expression("unique:3*colors").unique
        assert parse_expression("3*unique*colors").unique

    def test_again(self):
        assert parse_expression("again") == AgainExpr()
        assert parse_expression("2*again") == AgainExpr(count=2)
        assert parse_expression("2*unique*again") == AgainExpr(count=2, unique=True)

    def test_variable(self):
        assert parse_expression("$name") == VariableExpr(name="name")

    def test_placeholder(self):
        assert parse_expression("@race") == PlaceholderExpr(name="race")
        assert parse_expression("@race.name") == PlaceholderExpr(name="race", properties=("name",))

    def test_capture_multi_roll(self):
        expr = parse_expression("3*npc >> $crew")
        assert isinstance(expr, CaptureMultiRollExpr)
        assert expr.count.literal == 3
        assert expr.ref == "npc"
        assert expr.capture_var == "crew"
        assert not expr.silent

    def test_silent_capture(self):
        expr = parse_expression("2*npc >> $crew|silent")
        assert expr.silent

    def test_single_capture_defaults_to_one(self):
        expr = parse_expression("npc >> $hero")
        assert expr.count.literal == 1

    def test_capture_access(self):
        expr = parse_expression("$crew[0].@name")
        assert expr == CaptureAccessExpr(var_name="crew", index=0, properties=("name",))

    def test_capture_negative_index(self):
        assert parse_expression("$crew[-1]").index == -1

    def test_capture_count(self):
        assert parse_expression("$crew.count").properties == ("count",)

    def test_capture_separator(self):
        expr = parse_expression('$crew|"; "')
        assert isinstance(expr, CaptureAccessExpr)
        assert expr.separator == "; "

    def test_collect(self):
        expr = parse_expression("collect:$crew.@name|unique")
        assert expr == CollectExpr(var_name="crew", property="name", unique=True)

    def test_switch_with_subject_and_else(self):
        expr = parse_expression('$x.switch[$=="a":"A"].else["B"]')
        assert isinstance(expr, SwitchExpr)
        assert expr.subject == "$x"
        assert len(expr.cases) == 1
        assert expr.cases[0].condition == '$=="a"'
        assert expr.cases[0].result == '"A"'
        assert expr.fallback == '"B"'

    def test_switch_beats_other_forms(self):
        """A switch anywhere in the text wins over the table-ref fallback."""
        expr = parse_expression('switch[$level > 3:"veteran"].switch[$level > 0:"novice"]')
        assert isinstance(expr, SwitchExpr)
        assert expr.subject is None
        assert len(expr.cases) == 2


class TestParseErrors:
    """Malformed expressions raise ParseError."""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "   ",
            "dice:abc",
            "dice:1d0",
            "1d0*colors",
            "math:",
            "colors.",
            "colors.@",
            "3*colors|bogus",
            'colors|", "',
            "$crew.count.@name",
            "collect:$crew",
            "3*npc >> crew",
            'switch[nocolon]',
        ],
    )
    def test_invalid(self, text):
        with pytest.raises(ParseError):
            parse_expression(text)

    def test_parse_error_is_engine_error(self):
        with pytest.raises(TableEngineError):
            parse_expression("colors.")


class TestSplitTopLevel:
    """Tests for quote- and bracket-aware splitting."""

    def test_quotes_protect_separator(self):
        assert split_top_level('a|"x|y"|b', "|") == ["a", '"x|y"', "b"]

    def test_brackets_protect_separator(self):
        assert split_top_level("a:[b:c]:d", ":") == ["a", "[b:c]", "d"]
