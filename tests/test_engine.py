"""
Integration tests for RandomTableEngine.

Covers loading and listing collections, table variants, templates,
references, multi-rolls, instances, again, dice and math expressions,
switches, document conditionals, limits and per-call isolation.
"""

import json
import logging

import pytest

from tablecraft.engine import EngineConfig, RandomTableEngine, RollResult
from tablecraft.errors import (
    DocumentValidationError,
    MathError,
    ParseError,
    RecursionLimitError,
    ReferenceResolutionError,
    SelectionError,
    TableEngineError,
)

from helpers import make_document, simple_table, template


def _load(engine, collection_id="test", **document):
    engine.load_collection(make_document(**document), collection_id)
    return engine


@pytest.fixture
def basic(engine):
    """Engine with a small fantasy collection loaded as 'test'."""
    return _load(
        engine,
        tables=[
            simple_table("color", "red"),
            simple_table("abc", {"id": "a", "value": "A"}, {"id": "b", "value": "B"}, {"id": "c", "value": "C"}),
            simple_table("race", {"value": "Elf", "sets": {"size": "small", "level": "3"}}),
            simple_table(
                "mainTable",
                {"value": "MainValue", "sets": {"propA": "subTable", "note": "just words"}},
            ),
            simple_table("subTable", "ResultFromA"),
            simple_table("npc", "Alice", "Bob", "Carol"),
            simple_table("loop", "{{loop}}"),
            simple_table("secret", "hidden thing", hidden=True),
        ],
        templates=[
            template("cloak", "A {{color}} cloak"),
            template("racial", "{{race}}"),
        ],
        variables={"n": "4", "mood": "angry", "level": "5"},
    )


class TestCollections:
    """Loading, listing and unloading collections."""

    def test_list_collections(self, basic):
        refs = basic.list_collections()
        assert [(r.id, r.namespace, r.name) for r in refs] == [("test", "test.core", "Test Collection")]
        assert basic.has_collection("test")

    def test_list_tables_hides_hidden(self, basic):
        visible = {t.id for t in basic.list_tables("test")}
        assert "secret" not in visible
        assert "color" in visible
        everything = {t.id for t in basic.list_tables("test", include_hidden=True)}
        assert "secret" in everything

    def test_list_tables_across_collections(self, basic):
        _load(basic, "other", namespace="other.ns", tables=[simple_table("extra", "x")])
        infos = basic.list_tables()
        assert {info.collection_id for info in infos} == {"test", "other"}

    def test_table_info(self, basic):
        info = next(t for t in basic.list_tables("test") if t.id == "abc")
        assert info.type == "simple"
        assert info.entry_count == 3

    def test_list_templates(self, basic):
        assert [t.id for t in basic.list_templates("test")] == ["cloak", "racial"]

    def test_get_table_and_template(self, basic):
        assert basic.get_table("color").id == "color"
        assert basic.get_table("color", "test").id == "color"
        assert basic.get_table("nothing") is None
        assert basic.get_template("cloak", "test").pattern == "A {{color}} cloak"
        assert basic.get_template("cloak", "missing") is None

    def test_get_collection(self, basic):
        collection = basic.get_collection("test")
        assert collection.namespace == "test.core"
        assert basic.get_collection("missing") is None

    def test_unload(self, basic):
        assert basic.unload_collection("test")
        assert not basic.has_collection("test")
        with pytest.raises(ReferenceResolutionError):
            basic.roll("color", "test")

    def test_update_document(self, basic):
        basic.update_document("test", make_document(tables=[simple_table("color", "green")]))
        assert basic.roll("color", "test").text == "green"

    def test_load_from_json(self, engine):
        result = engine.load_from_json(json.dumps(make_document(tables=[simple_table("t", "x")])), "json")
        assert result.is_valid
        assert engine.roll("t", "json").text == "x"

    def test_load_from_invalid_json(self, engine):
        result = engine.load_from_json("{not json", "bad")
        assert not result.is_valid
        assert result.codes() == ["INVALID_JSON"]
        assert not engine.has_collection("bad")

    def test_invalid_document_is_not_loaded(self, engine):
        result = engine.load_from_json(json.dumps(make_document(tables=[{"id": "empty", "entries": []}])), "bad")
        assert "EMPTY_TABLE" in result.codes()
        assert not engine.has_collection("bad")

    def test_unsupported_spec_version_warns(self, engine, caplog):
        with caplog.at_level(logging.WARNING):
            _load(engine, spec_version="9.9", tables=[simple_table("t", "x")])
        assert engine.has_collection("test")
        assert "9.9" in caplog.text

    def test_strict_spec_version_rejects(self, seeded_engine):
        engine = seeded_engine(strict_spec_version=True)
        with pytest.raises(DocumentValidationError):
            _load(engine, spec_version="9.9", tables=[simple_table("t", "x")])
        assert not engine.has_collection("test")

    def test_engines_do_not_share_collections(self, basic):
        assert not RandomTableEngine().has_collection("test")


class TestRolling:
    """Basic table and template rolls."""

    def test_roll_simple_table(self, basic):
        result = basic.roll("color", "test")
        assert isinstance(result, RollResult)
        assert result.text == "red"
        assert result.metadata["kind"] == "roll"
        assert result.metadata["entryId"] == "color000"

    def test_unknown_table(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.roll("nothing", "test")

    def test_unknown_collection(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.roll("color", "nowhere")

    def test_roll_template(self, basic):
        result = basic.roll_template("cloak", "test")
        assert result.text == "A red cloak"
        assert result.metadata["kind"] == "template"

    def test_unknown_template(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.roll_template("nothing", "test")

    def test_raw_pattern(self, basic):
        assert basic.evaluate_raw_pattern("{{color}} and {{cloak}}", "test").text == "red and A red cloak"

    def test_plain_text_pattern(self, basic):
        assert basic.evaluate_raw_pattern("no braces here", "test").text == "no braces here"

    def test_weighted_pick_stays_in_table(self, basic):
        for _ in range(30):
            assert basic.roll("npc", "test").text in {"Alice", "Bob", "Carol"}

    def test_result_to_dict(self, basic):
        data = basic.roll("race", "test").to_dict()
        assert data["text"] == "Elf"
        assert data["placeholders"]["race"]["size"] == "small"
        assert data["metadata"]["collectionId"] == "test"


class TestPlaceholders:
    """Entry sets, placeholders and dynamic table dispatch."""

    def test_sets_become_placeholders(self, basic):
        result = basic.evaluate_raw_pattern("{{race}} ({{@race.size}})", "test")
        assert result.text == "Elf (small)"
        assert result.placeholders["race"] == {"size": "small", "level": "3", "value": "Elf"}

    def test_value_placeholder(self, basic):
        assert basic.evaluate_raw_pattern("{{race}}={{@race}}={{@race.value}}", "test").text == "Elf=Elf=Elf"

    def test_unset_placeholder(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{@race.size}}", "test")

    def test_calls_do_not_share_placeholders(self, basic):
        basic.roll("race", "test")
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{@race.size}}", "test")

    def test_missing_property(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{race}}{{@race.weight}}", "test")

    def test_property_naming_a_table_is_rolled(self, basic):
        text = basic.evaluate_raw_pattern("Value={{mainTable}} PropA={{@mainTable.propA}}", "test").text
        assert text == "Value=MainValue PropA=ResultFromA"

    def test_shared_initializer_sets_placeholders(self, engine):
        _load(
            engine,
            tables=[
                simple_table("mainTable", {"value": "MainValue", "sets": {"propA": "subTable"}}),
                simple_table("subTable", "ResultFromA"),
            ],
            templates=[template("show", "Value={{@mainTable.value}} PropA={{@mainTable.propA}}")],
            shared={"_init": "{{mainTable}}"},
        )
        assert engine.roll_template("show", "test").text == "Value=MainValue PropA=ResultFromA"

    def test_plain_property_is_returned_as_text(self, basic):
        assert basic.evaluate_raw_pattern("{{mainTable}}: {{@mainTable.note}}", "test").text == "MainValue: just words"

    def test_property_chain_on_table_reference(self, basic):
        assert basic.evaluate_raw_pattern("{{mainTable.@propA}}", "test").text == "ResultFromA"
        assert basic.evaluate_raw_pattern("{{race.@size}}", "test").text == "small"

    def test_template_placeholders_do_not_leak(self, basic):
        """A referenced template rolls in its own scope frame."""
        assert basic.evaluate_raw_pattern("{{racial}}", "test").text == "Elf"
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{racial}} {{@race.size}}", "test")

    def test_set_values_are_evaluated_at_selection(self, engine):
        _load(
            engine,
            tables=[
                simple_table("knight", {"value": "Knight", "sets": {"weapon": "{{blade}}", "title": "Sir {{color}}"}}),
                simple_table("blade", {"value": "Sword", "sets": {"damage": "1d8"}}),
                simple_table("color", "Red"),
            ],
        )
        text = engine.evaluate_raw_pattern(
            "{{knight}}: {{@knight.title}} with {{@knight.weapon}} ({{@knight.weapon.damage}})", "test"
        ).text
        assert text == "Knight: Sir Red with Sword (1d8)"

    def test_self_description(self, engine):
        _load(
            engine,
            tables=[
                simple_table("weapon", {"value": "Sword ({{@self.description}})", "description": "sharp"}),
            ],
        )
        result = engine.roll("weapon", "test")
        assert result.text == "Sword (sharp)"
        assert len(result.descriptions) == 1
        entry = result.descriptions[0]
        assert entry.table_id == "weapon"
        assert entry.rolled_value == "Sword (sharp)"
        assert entry.description == "sharp"

    def test_descriptions_are_patterns(self, engine):
        _load(
            engine,
            tables=[
                simple_table("gem", {"value": "Ruby", "description": "Worth {{dice:1d1*50}} gp"}),
            ],
        )
        assert engine.roll("gem", "test").descriptions[0].description == "Worth 50 gp"

    def test_no_descriptions_is_none(self, basic):
        assert basic.roll("color", "test").descriptions is None


class TestTableVariants:
    """Composite and collection tables, inheritance and result types."""

    @pytest.fixture
    def loot(self, engine):
        return _load(
            engine,
            tables=[
                simple_table("coins", "Gold", resultType="currency"),
                simple_table("gems", {"value": "Ruby", "description": "red stone"}),
                {"id": "treasure", "type": "composite", "resultType": "loot",
                 "sources": [{"tableId": "coins", "weight": 1}, {"tableId": "gems", "weight": 1}]},
                {"id": "hoard", "type": "collection", "resultType": "hoard", "collections": ["coins", "gems"]},
                simple_table("baseWeapons", {"id": "sword", "value": "Sword"}, resultType="weapon"),
                simple_table("magicWeapons", {"id": "sword", "value": "Flaming Sword"}, extends="baseWeapons"),
            ],
        )

    def test_composite(self, loot):
        seen = {loot.roll("treasure", "test").text for _ in range(40)}
        assert seen == {"Gold", "Ruby"}

    def test_composite_result_type(self, loot):
        for _ in range(20):
            result = loot.roll("treasure", "test")
            expected = "currency" if result.text == "Gold" else "loot"
            assert result.result_type == expected

    def test_collection_merges_pools(self, loot):
        seen = {loot.roll("hoard", "test").text for _ in range(40)}
        assert seen == {"Gold", "Ruby"}

    def test_collection_description_names_source_table(self, loot):
        for _ in range(40):
            result = loot.roll("hoard", "test")
            if result.text == "Ruby":
                assert result.descriptions[0].table_id == "gems"
                return
        pytest.fail("gems entry never selected")

    def test_inherited_table(self, loot):
        result = loot.roll("magicWeapons", "test")
        assert result.text == "Flaming Sword"
        assert result.metadata["entryId"] == "sword"

    def test_entry_result_type_wins(self, engine):
        _load(engine, tables=[simple_table("t", {"value": "x", "resultType": "special"}, resultType="plain")])
        assert engine.roll("t", "test").result_type == "special"

    def test_template_result_type(self, engine):
        _load(engine, tables=[simple_table("t", "x")], templates=[template("tpl", "{{t}}", resultType="npc")])
        assert engine.roll_template("tpl", "test").result_type == "npc"


class TestMultiRoll:
    """N*table rolls, unique draws and overflow behavior."""

    def test_literal_count(self, basic):
        assert basic.evaluate_raw_pattern("{{3*color}}", "test").text == "red, red, red"

    def test_separator(self, basic):
        assert basic.evaluate_raw_pattern('{{3*color|" / "}}', "test").text == "red / red / red"

    def test_variable_count(self, basic):
        assert basic.evaluate_raw_pattern("{{$n*color}}", "test").text == "red, red, red, red"

    def test_dice_count(self, basic):
        assert basic.evaluate_raw_pattern("{{2d1*color}}", "test").text == "red, red"

    def test_zero_count(self, basic):
        assert basic.evaluate_raw_pattern("[{{0*color}}]", "test").text == "[]"

    def test_unknown_count_variable(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{$missing*color}}", "test")

    def test_template_multi_roll(self, basic):
        assert basic.evaluate_raw_pattern("{{2*cloak}}", "test").text == "A red cloak, A red cloak"

    def test_unique_draws_are_distinct(self, basic):
        for _ in range(10):
            items = basic.evaluate_raw_pattern("{{3*unique*abc}}", "test").text.split(", ")
            assert sorted(items) == ["A", "B", "C"]

    def test_unique_overflow_stops_by_default(self, basic):
        items = basic.evaluate_raw_pattern("{{unique:5*abc}}", "test").text.split(", ")
        assert sorted(items) == ["A", "B", "C"]

    def test_unique_overflow_cycle(self, seeded_engine):
        engine = _load(seeded_engine(unique_overflow_behavior="cycle"), tables=[simple_table("abc", "A", "B", "C")])
        items = engine.evaluate_raw_pattern("{{5*unique*abc}}", "test").text.split(", ")
        assert len(items) == 5
        assert sorted(items[:3]) == ["A", "B", "C"]
        assert items[3] != items[4]

    def test_unique_overflow_error(self, seeded_engine):
        engine = _load(seeded_engine(unique_overflow_behavior="error"), tables=[simple_table("abc", "A", "B", "C")])
        with pytest.raises(SelectionError):
            engine.evaluate_raw_pattern("{{5*unique*abc}}", "test")

    def test_document_overrides_overflow_behavior(self, engine):
        _load(
            engine,
            tables=[simple_table("abc", "A", "B", "C")],
            metadata={"uniqueOverflowBehavior": "error"},
        )
        with pytest.raises(SelectionError):
            engine.evaluate_raw_pattern("{{4*unique*abc}}", "test")


class TestAgainAndInstances:
    """{{again}} rerolls and table#label instances."""

    def test_again_never_repeats_current_entry(self, engine):
        _load(
            engine,
            tables=[
                simple_table(
                    "t",
                    {"id": "a", "value": "A"},
                    {"id": "b", "value": "B"},
                    {"id": "both", "value": "{{2*unique*again}}"},
                )
            ],
        )
        hits = 0
        for seed in range(200):
            result = engine.roll("t", "test", {"seed": seed})
            if result.metadata["entryId"] == "both":
                hits += 1
                assert sorted(result.text.split(", ")) == ["A", "B"]
        assert hits > 0

    def test_again_with_nothing_left(self, engine):
        _load(engine, tables=[simple_table("solo", "[{{again}}]")])
        assert engine.roll("solo", "test").text == "[]"

    def test_again_outside_table(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{again}}", "test")

    def test_instance_is_reused(self, basic):
        for _ in range(20):
            first, second = basic.evaluate_raw_pattern("{{npc#boss}} and {{npc#boss}}", "test").text.split(" and ")
            assert first == second

    def test_instances_reset_between_calls(self, basic):
        seen = {basic.evaluate_raw_pattern("{{npc#boss}}", "test").text for _ in range(40)}
        assert len(seen) > 1

    def test_template_instance(self, basic):
        assert basic.evaluate_raw_pattern("{{cloak#c}}/{{cloak#c}}", "test").text == "A red cloak/A red cloak"


class TestDiceAndMath:
    """dice: and math: expressions."""

    def test_dice(self, basic):
        assert basic.evaluate_raw_pattern("{{dice:1d1+4}}", "test").text == "5"

    def test_dice_range(self, basic):
        for _ in range(30):
            assert 2 <= int(basic.evaluate_raw_pattern("{{dice:2d6}}", "test").text) <= 12

    def test_math(self, basic):
        assert basic.evaluate_raw_pattern("{{math:2 + 3 * 4}}", "test").text == "14"

    def test_math_with_variables_and_placeholders(self, basic):
        text = basic.evaluate_raw_pattern("{{race}} {{math:@race.level * $n}}", "test").text
        assert text == "Elf 12"

    def test_math_with_nested_pattern(self, basic):
        assert basic.evaluate_raw_pattern("{{math:{{dice:1d1}} + 1}}", "test").text == "2"

    def test_math_unknown_reference(self, basic):
        with pytest.raises(ReferenceResolutionError):
            basic.evaluate_raw_pattern("{{math:$nope + 1}}", "test")

    def test_math_non_numeric(self, basic):
        with pytest.raises(MathError):
            basic.evaluate_raw_pattern("{{math:$mood + 1}}", "test")

    @pytest.mark.parametrize("pattern", ["{{math:9**9**9}}", "{{math:10.0**400}}"])
    def test_math_out_of_range_keeps_trace(self, engine, pattern):
        _load(engine, tables=[simple_table("t", "x")], templates=[template("big", pattern)])
        with pytest.raises(MathError) as exc_info:
            engine.roll_template("big", "test", {"enableTrace": True})
        assert exc_info.value.trace is not None

    def test_zero_sided_dice(self, engine):
        _load(engine, tables=[simple_table("t", "x")], templates=[template("bad", "{{dice:1d0}}")])
        with pytest.raises(ParseError) as exc_info:
            engine.roll_template("bad", "test", {"enableTrace": True})
        assert exc_info.value.trace is not None

    def test_zero_sided_roll_count(self, basic):
        with pytest.raises(ParseError):
            basic.evaluate_raw_pattern("{{1d0*color}}", "test")

    def test_dice_count_limit(self, seeded_engine):
        engine = _load(seeded_engine(max_dice_count=10), tables=[simple_table("t", "x")])
        assert engine.evaluate_raw_pattern("{{dice:10d1}}", "test").text == "10"
        with pytest.raises(ParseError, match="Too many dice"):
            engine.evaluate_raw_pattern("{{dice:1000000000d6}}", "test")
        with pytest.raises(ParseError, match="Too many dice"):
            engine.evaluate_raw_pattern("{{11d1*t}}", "test")


class TestSwitchAndConditionals:
    """switch[] expressions and document conditionals."""

    def test_switch_on_subject(self, basic):
        pattern = '{{$mood.switch[$=="angry":"Grr"].else["Hi"]}}'
        assert basic.evaluate_raw_pattern(pattern, "test").text == "Grr"

    def test_switch_falls_back_to_else(self, basic):
        pattern = '{{$mood.switch[$=="calm":"Hmm"].else["Hi"]}}'
        assert basic.evaluate_raw_pattern(pattern, "test").text == "Hi"

    def test_switch_without_match_or_else(self, basic):
        assert basic.evaluate_raw_pattern('[{{$mood.switch[$=="calm":"Hmm"]}}]', "test").text == "[]"

    def test_switch_without_subject(self, basic):
        pattern = '{{switch[$level > 9:"legend"].switch[$level > 3:"veteran"].else["novice"]}}'
        assert basic.evaluate_raw_pattern(pattern, "test").text == "veteran"

    def test_unquoted_result_is_an_expression(self, basic):
        assert basic.evaluate_raw_pattern("{{switch[$level > 3:color]}}", "test").text == "red"

    def test_quoted_result_is_a_pattern(self, basic):
        assert basic.evaluate_raw_pattern('{{switch[$level > 3:"a {{color}} hat"]}}', "test").text == "a red hat"

    def test_document_conditionals(self, engine):
        _load(
            engine,
            tables=[simple_table("race", "Elf")],
            conditionals=[
                {"when": '@race.value == "Elf"', "action": "setVariable", "target": "lang", "value": "Elvish"},
                {"when": '$lang == "Elvish"', "action": "append", "value": " speaks {{$lang}}"},
                {"when": '@race.value == "Dwarf"', "action": "prepend", "value": "Bearded "},
            ],
        )
        assert engine.roll("race", "test").text == "Elf speaks Elvish"

    def test_document_conditionals_apply_to_templates(self, engine):
        _load(
            engine,
            tables=[simple_table("race", "Dwarf")],
            templates=[template("hero", "{{race}} hero")],
            conditionals=[{"when": '@race.value == "Dwarf"', "action": "replace", "target": "hero", "value": "warrior"}],
        )
        assert engine.roll_template("hero", "test").text == "Dwarf warrior"

    def test_conditional_trace_nodes(self, engine):
        _load(
            engine,
            tables=[simple_table("race", "Elf")],
            conditionals=[{"when": '@race.value == "Orc"', "action": "append", "value": "!"}],
        )
        result = engine.roll("race", "test", {"enableTrace": True})
        conditional_nodes = [n for n in result.trace.root.walk() if n.type.value == "conditional"]
        assert len(conditional_nodes) == 1
        assert conditional_nodes[0].metadata.matched is False


class TestLimitsAndIsolation:
    """Recursion limits, error context, scope balance and seeding."""

    def test_recursion_limit(self, basic):
        with pytest.raises(RecursionLimitError) as exc_info:
            basic.roll("loop", "test")
        assert "Recursion limit exceeded (50)" in str(exc_info.value)

    def test_configured_recursion_limit(self, seeded_engine):
        engine = _load(seeded_engine(max_recursion_depth=3), tables=[simple_table("loop", "{{loop}}")])
        with pytest.raises(RecursionLimitError) as exc_info:
            engine.roll("loop", "test")
        assert "(3)" in str(exc_info.value)

    def test_document_recursion_limit(self, engine):
        _load(engine, tables=[simple_table("loop", "{{loop}}")], metadata={"maxRecursionDepth": 2})
        with pytest.raises(RecursionLimitError) as exc_info:
            engine.roll("loop", "test")
        assert "(2)" in str(exc_info.value)

    def test_sibling_references_do_not_see_each_others_sets(self, engine):
        _load(
            engine,
            tables=[
                simple_table("tableA", {"value": "A1", "sets": {"mood": "grim"}}),
                simple_table("simpleValue", "SimpleResult"),
            ],
            templates=[template("chain", "{{tableA}} then {{simpleValue}} then {{tableA}} again")],
        )
        result = engine.roll_template("chain", "test")
        assert result.text == "A1 then SimpleResult then A1 again"
        assert "grim" not in result.text
        assert result.placeholders["simpleValue"] == {"value": "SimpleResult"}

    @pytest.mark.parametrize("enable_trace", [False, True])
    def test_document_recursion_limit_beyond_interpreter_stack(self, engine, enable_trace):
        _load(engine, tables=[simple_table("loop", "{{loop}}")], metadata={"maxRecursionDepth": 5000})
        with pytest.raises(RecursionLimitError) as exc_info:
            engine.roll("loop", "test", {"enableTrace": enable_trace})
        assert "Recursion limit exceeded" in str(exc_info.value)
        assert (exc_info.value.trace is not None) is enable_trace
        assert isinstance(exc_info.value.__cause__, RecursionError)

    def test_recursion_error_is_engine_error(self, basic):
        with pytest.raises(TableEngineError):
            basic.roll("loop", "test")

    def test_error_names_its_expression(self, basic):
        with pytest.raises(ReferenceResolutionError) as exc_info:
            basic.evaluate_raw_pattern("Hello {{$nobody}}", "test")
        assert exc_info.value.expression == "$nobody"
        assert "{{$nobody}}" in str(exc_info.value)

    def test_parse_error_surfaces(self, basic):
        with pytest.raises(TableEngineError):
            basic.evaluate_raw_pattern("{{colors.}}", "test")

    def test_scopes_balance(self, basic):
        result = basic.evaluate_raw_pattern("{{racial}} {{2*cloak}} {{3*npc >> $crew|silent}}", "test")
        assert result.metadata["scopePushes"] == result.metadata["scopePops"]
        # root frame, three template frames and three capture frames
        assert result.metadata["scopePushes"] == 7

    def test_engine_continues_after_error(self, basic):
        with pytest.raises(RecursionLimitError):
            basic.roll("loop", "test")
        assert basic.roll("color", "test").text == "red"

    def test_per_call_seed(self, basic):
        first = basic.evaluate_raw_pattern("{{dice:1d1000}} {{npc}}", "test", {"seed": 7}).text
        second = basic.evaluate_raw_pattern("{{dice:1d1000}} {{npc}}", "test", {"seed": 7}).text
        assert first == second

    def test_seeded_engines_agree(self):
        document = make_document(tables=[simple_table("npc", "Alice", "Bob", "Carol", "Dan")])
        engines = [RandomTableEngine(seed=99), RandomTableEngine(seed=99)]
        for engine in engines:
            engine.load_collection(document, "test")
        rolls = [[engine.roll("npc", "test").text for _ in range(20)] for engine in engines]
        assert rolls[0] == rolls[1]

    def test_set_seed(self, basic):
        basic.set_seed(5)
        first = [basic.roll("npc", "test").text for _ in range(10)]
        basic.set_seed(5)
        assert [basic.roll("npc", "test").text for _ in range(10)] == first


class TestImportsThroughEngine:
    """Cross-collection references."""

    def test_alias_reference(self, engine):
        _load(engine, "names", namespace="fantasy.names", tables=[simple_table("greeting", "Hail")])
        _load(
            engine,
            "core",
            namespace="fantasy.core",
            tables=[simple_table("intro", "{{names.greeting}}, traveller")],
            imports=[{"path": "fantasy.names", "alias": "names"}],
        )
        engine.resolve_imports()
        assert engine.roll("intro", "core").text == "Hail, traveller"

    def test_imported_placeholders_use_table_id(self, engine):
        _load(engine, "names", namespace="fantasy.names", tables=[simple_table("title", {"value": "Sir", "sets": {"rank": "3"}})])
        _load(
            engine,
            "core",
            namespace="fantasy.core",
            tables=[simple_table("intro", "{{names.title}} of rank {{@title.rank}}")],
            imports=[{"path": "fantasy.names", "alias": "names"}],
        )
        assert engine.roll("intro", "core").text == "Sir of rank 3"

    @pytest.mark.parametrize("seed", [1, 7, 99])
    def test_explicit_binding_and_namespace_fallback_render_the_same(self, seeded_engine, seed):
        def build():
            engine = _load(
                seeded_engine(seed=seed),
                "names_col",
                namespace="fantasy.names",
                tables=[
                    simple_table("npc", "Alice", "Bob", "Carol", "Dan"),
                    simple_table("greeting", "Hail", "Well met", "Greetings"),
                ],
            )
            return _load(
                engine,
                "core",
                namespace="fantasy.core",
                tables=[simple_table("t", "x")],
                templates=[template("meet", "{{names.greeting}}, {{3*names.npc}}")],
                imports=[{"path": "fantasy.names", "alias": "names"}],
            )

        bound = build()
        bound.resolve_imports({"fantasy.names": "names_col"})
        assert bound.get_collection("core").imports == {"names": "names_col"}
        unbound = build()

        assert bound.roll_template("meet", "core").text == unbound.roll_template("meet", "core").text

    def test_unresolvable_import(self, engine):
        _load(
            engine,
            "core",
            tables=[simple_table("intro", "{{names.greeting}}")],
            imports=[{"path": "nowhere", "alias": "names"}],
        )
        engine.resolve_imports()
        with pytest.raises(ReferenceResolutionError):
            engine.roll("intro", "core")
