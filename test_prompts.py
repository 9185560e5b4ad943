"""Tests for prompts.py – interactive surface"""
import pytest

from prompts import parse_selection, PromptAbort
from conftest import ScriptedPrompter


class TestParseSelection:

    @pytest.mark.parametrize("text,count,expected", [
        ("1", 3, 1),
        (" 3 ", 3, 3),
        ("0", 3, None),
        ("4", 3, None),
        ("-1", 3, None),
        ("1.5", 3, None),
        ("two", 3, None),
        ("", 3, None),
    ])
    def test_parse(self, text, count, expected):
        assert parse_selection(text, count) == expected


class TestPrompter:

    def test_ask_blank_keeps_default(self):
        prompter = ScriptedPrompter([""])
        assert prompter.ask("Region", default="eastus") == "eastus"

    def test_ask_valid_reprompts(self):
        prompter = ScriptedPrompter(["bad", "good"])
        assert prompter.ask_valid("Value", lambda t: t == "good", "nope") == "good"
        assert "[WARN] nope" in prompter.transcript

    def test_ask_valid_budget(self):
        prompter = ScriptedPrompter(["x", "y", "z"], max_attempts=3)
        with pytest.raises(PromptAbort):
            prompter.ask_valid("Value", lambda t: False, "nope")

    def test_confirm(self):
        assert ScriptedPrompter(["y"]).confirm("Go?") is True
        assert ScriptedPrompter(["no"]).confirm("Go?", default=True) is False
        assert ScriptedPrompter([""]).confirm("Go?", default=True) is True

    def test_choose_returns_zero_based(self):
        prompter = ScriptedPrompter(["9", "abc", "2"])
        assert prompter.choose("Pick", ["a", "b", "c"]) == 1
        assert "  3. c" in prompter.transcript

    def test_choose_back(self):
        prompter = ScriptedPrompter(["3"])
        assert prompter.choose("Pick", ["a", "b"], allow_back=True) is None
        assert "  3. Back" in prompter.transcript

    def test_choose_budget_exhausted(self):
        prompter = ScriptedPrompter(["0", "0", "0"], max_attempts=3)
        with pytest.raises(PromptAbort):
            prompter.choose("Pick", ["a"])

    def test_choose_nothing(self):
        with pytest.raises(PromptAbort):
            ScriptedPrompter().choose("Pick", [], allow_back=True)

    def test_secret_twice_must_match(self):
        prompter = ScriptedPrompter(secrets=["one", "two", "Secret!1", "Secret!1"])
        assert prompter.secret_twice("Password") == "Secret!1"
        assert "did not match" in prompter.transcript
