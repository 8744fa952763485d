"""
Integration tests for capture variables: ``N*table >> $var``, indexed and
property access, collect:, and capture-aware shared variables.
"""

import pytest

from tablecraft.errors import ReferenceResolutionError, SharedShadowError

from helpers import make_document, simple_table, template


@pytest.fixture
def party(engine):
    engine.load_collection(
        make_document(
            tables=[
                simple_table(
                    "npc",
                    {"value": "Alice", "sets": {"role": "fighter", "weapon": "{{blade}}"}, "description": "brave"},
                ),
                simple_table("blade", {"value": "Sword", "sets": {"damage": "1d8"}}),
                simple_table("abc", "A", "B", "C"),
                simple_table("mixed", {"value": "Orc", "sets": {"role": "brute"}}, {"value": "Bat"}),
            ],
            templates=[
                template(
                    "hero",
                    "{{$hero}} wields {{$hero.@weapon}} ({{$hero.@weapon.@damage}})",
                    shared={"$hero": "{{npc}}"},
                ),
                template(
                    "blade_only",
                    "{{$blade.@damage}} from {{$blade}}",
                    shared={"$hero": "{{npc}}", "$blade": "{{$hero.@weapon}}"},
                ),
                template("roles", "{{collect:$hero.@role}}", shared={"$hero": "{{npc}}"}),
            ],
        ),
        "test",
    )
    return engine


def run(engine, pattern):
    return engine.evaluate_raw_pattern(pattern, "test")


class TestCaptureMultiRoll:
    """Capturing rolls into a variable."""

    def test_capture_outputs_values(self, party):
        assert run(party, "{{2*npc >> $crew}}").text == "Alice, Alice"

    def test_silent_capture(self, party):
        assert run(party, "[{{2*npc >> $crew|silent}}]").text == "[]"

    def test_capture_separator(self, party):
        assert run(party, '{{2*npc >> $crew|" & "}}').text == "Alice & Alice"

    def test_capture_is_returned(self, party):
        result = run(party, "{{2*npc >> $crew|silent}}")
        crew = result.captures["crew"]
        assert crew.count == 2
        assert crew.items[0].value == "Alice"
        assert crew.items[0].sets["role"] == "fighter"
        assert crew.items[0].sets["weapon"].value == "Sword"
        assert crew.items[0].description == "brave"

    def test_capture_to_dict(self, party):
        data = run(party, "{{1*npc >> $crew|silent}}").to_dict()
        assert data["captures"]["crew"]["count"] == 1
        assert data["captures"]["crew"]["items"][0]["sets"]["weapon"]["value"] == "Sword"

    def test_capture_items_do_not_set_outer_placeholders(self, party):
        """Each captured roll gets its own scope frame."""
        with pytest.raises(ReferenceResolutionError):
            run(party, "{{1*npc >> $crew|silent}}{{@npc.role}}")

    def test_unique_capture(self, party):
        result = run(party, "{{5*unique*abc >> $letters|silent}}{{$letters.count}}")
        assert result.text == "3"
        assert sorted(item.value for item in result.captures["letters"].items) == ["A", "B", "C"]

    def test_empty_capture(self, party):
        text = run(party, "{{0*npc >> $crew|silent}}Count: {{$crew.count}}, Values: [{{collect:$crew.@role}}]").text
        assert text == "Count: 0, Values: []"

    def test_recapture_overwrites(self, party):
        result = run(party, "{{3*npc >> $crew|silent}}{{1*npc >> $crew|silent}}{{$crew.count}}")
        assert result.text == "1"


class TestCaptureAccess:
    """$var, $var[i], $var.@prop and $var.count."""

    def test_whole_variable(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{$crew}}").text == "Alice, Alice"

    def test_count(self, party):
        assert run(party, "{{3*npc >> $crew|silent}}{{$crew.count}}").text == "3"

    def test_index_and_property(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{$crew[0].@role}}").text == "fighter"

    def test_negative_index(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{$crew[-1]}}").text == "Alice"

    def test_out_of_bounds_is_empty(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}[{{$crew[5]}}]").text == "[]"

    def test_nested_property_chain(self, party):
        text = run(party, "{{1*npc >> $crew|silent}}{{$crew[0].@weapon}} {{$crew[0].@weapon.@damage}}").text
        assert text == "Sword 1d8"

    def test_item_description(self, party):
        assert run(party, "{{1*npc >> $crew|silent}}{{$crew[0].@description}}").text == "brave"

    def test_property_across_items(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{$crew.@role}}").text == "fighter, fighter"

    def test_property_separator(self, party):
        assert run(party, '{{2*npc >> $crew|silent}}{{$crew.@role|"/"}}').text == "fighter/fighter"

    def test_missing_property_on_index_raises(self, party):
        with pytest.raises(ReferenceResolutionError):
            run(party, "{{1*npc >> $crew|silent}}{{$crew[0].@height}}")

    def test_unknown_capture(self, party):
        with pytest.raises(ReferenceResolutionError):
            run(party, "{{$nobody[0]}}")


class TestCollect:
    """collect:$var.@prop."""

    def test_collect(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{collect:$crew.@role}}").text == "fighter, fighter"

    def test_collect_unique(self, party):
        assert run(party, "{{3*npc >> $crew|silent}}{{collect:$crew.@role|unique}}").text == "fighter"

    def test_collect_skips_missing_values(self, party):
        result = run(party, "{{6*mixed >> $mob|silent}}{{collect:$mob.@role|unique}}")
        roles = result.text
        has_orc = any(item.value == "Orc" for item in result.captures["mob"].items)
        assert roles == ("brute" if has_orc else "")

    def test_collect_value(self, party):
        assert run(party, "{{2*npc >> $crew|silent}}{{collect:$crew.@value}}").text == "Alice, Alice"

    def test_collect_unknown_variable(self, party):
        with pytest.raises(ReferenceResolutionError):
            run(party, "{{collect:$nobody.@role}}")


class TestCaptureAwareShared:
    """'$name' shared variables hold a whole roll, not just its text."""

    def test_shared_capture_properties(self, party):
        assert party.roll_template("hero", "test").text == "Alice wields Sword (1d8)"

    def test_derived_shared_capture(self, party):
        assert party.roll_template("blade_only", "test").text == "1d8 from Sword"

    def test_collect_over_shared_capture(self, party):
        assert party.roll_template("roles", "test").text == "fighter"

    def test_shadowing_document_capture_is_an_error(self, engine):
        engine.load_collection(
            make_document(
                tables=[simple_table("npc", "Alice")],
                templates=[template("t", "{{$hero}}", shared={"$hero": "{{npc}}"})],
                shared={"$hero": "{{npc}}"},
            ),
            "test",
        )
        with pytest.raises(SharedShadowError) as exc_info:
            engine.roll_template("t", "test")
        assert exc_info.value.code == "SHARED_SHADOW"

    def test_document_level_capture(self, engine):
        engine.load_collection(
            make_document(
                tables=[simple_table("npc", {"value": "Alice", "sets": {"role": "fighter"}})],
                templates=[template("t", "{{$hero}} the {{$hero.@role}}")],
                shared={"$hero": "{{npc}}"},
            ),
            "test",
        )
        assert engine.roll_template("t", "test").text == "Alice the fighter"
