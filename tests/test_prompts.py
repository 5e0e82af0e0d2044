"""Tests for prompt composition."""

import pytest

from novelgen import (
    Character, STYLE_PROMPTS, build_generate_prompt, build_edit_prompt,
    build_sketch_prompt, build_narrative_prompt, character_context, strip_quotes,
)

RAVEN = Character(name="Raven", description="black hair, trenchcoat")


class TestCharacterContext:

    def test_empty_roster(self):
        assert character_context([]) == ""

    def test_entries_are_trimmed_and_joined(self):
        roster = [Character(name=" Raven ", description="black hair, trenchcoat "),
                  Character(name="Ada", description="red scarf")]
        assert character_context(roster) == "Raven: black hair, trenchcoat. Ada: red scarf"


class TestGeneratePrompt:

    def test_noir_with_one_character(self):
        prompt = build_generate_prompt("A rainy alley", "NOIR", [RAVEN])

        assert STYLE_PROMPTS["NOIR"] in prompt
        assert "Raven: black hair, trenchcoat." in prompt
        assert "Scene Description: A rainy alley." in prompt
        assert prompt.endswith("high quality masterpiece.")

    def test_roster_clause_absent_without_characters(self):
        prompt = build_generate_prompt("A rainy alley", "MODERN", [])

        assert "Defined Characters" not in prompt
        assert prompt.splitlines() == [
            f"Art Style: {STYLE_PROMPTS['MODERN']}.",
            "Scene Description: A rainy alley.",
            "(Ensure consistent character details). high quality masterpiece.",
        ]

    def test_is_deterministic(self):
        assert build_generate_prompt("x", "MANGA", [RAVEN]) == build_generate_prompt("x", "MANGA", [RAVEN])

    def test_sketch_wraps_prompt(self):
        prompt = build_sketch_prompt("Art Style: ink")
        assert prompt.startswith("Turn this rough sketch into a finished comic panel. Art Style: ink.")
        assert "Maintain the composition of the sketch" in prompt


class TestEditPrompt:

    def test_plain_instruction_without_roster(self):
        assert build_edit_prompt("add a red cape", []) == "add a red cape"

    def test_consistency_clause_with_roster(self):
        assert build_edit_prompt("add a red cape", [RAVEN]) == (
            "Edit Instruction: add a red cape. "
            "(Maintain character consistency: Raven: black hair, trenchcoat)")


class TestNarrativePrompt:

    def test_plot_includes_theme_and_characters(self):
        prompt = build_narrative_prompt("PLOT", "space heist", "Raven: black hair")
        assert '"space heist"' in prompt
        assert "Include these established characters in the scene: Raven: black hair" in prompt

    def test_plot_without_characters(self):
        assert "established characters" not in build_narrative_prompt("PLOT", "", "")

    def test_dialogue_ignores_characters(self):
        prompt = build_narrative_prompt("DIALOGUE", "a duel", "Raven: black hair")
        assert '"a duel"' in prompt
        assert "Raven" not in prompt

    def test_next_panel_demands_visual_traits(self):
        prompt = build_narrative_prompt("NEXT_PANEL", "Raven jumps", "Raven: black hair")
        assert 'Previous Panel Description: "Raven jumps"' in prompt
        assert "CONTEXT - Established Characters/Setting: Raven: black hair." in prompt
        assert "Do NOT use vague pronouns" in prompt

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_narrative_prompt("POEM", "x")


@pytest.mark.parametrize("raw,clean", [
    ('"Boom!"', "Boom!"),
    ("'Run'", "Run"),
    ("  plain text \n", "plain text"),
    ('He said "no"', 'He said "no'),
])
def test_strip_quotes(raw, clean):
    assert strip_quotes(raw) == clean
