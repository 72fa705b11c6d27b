"""Tests for dice notation parsing and server-side rolls."""

import random

import pytest

from questline.dice import DiceSpec, parse_dice, reroll_reported, roll, roll_dice
from questline.models import DiceRoll


class TestParseDice:
    @pytest.mark.parametrize("notation, expected", [
        ("d20", DiceSpec(1, 20, 0)),
        ("2d6+3", DiceSpec(2, 6, 3)),
        ("4d10-2", DiceSpec(4, 10, -2)),
        ("1d8 + 1", DiceSpec(1, 8, 1)),
        ("D12", DiceSpec(1, 12, 0)),
    ])
    def test_valid(self, notation, expected) -> None:
        assert parse_dice(notation) == expected

    @pytest.mark.parametrize("notation", ["", "twenty", "0d6", "2d0"])
    def test_invalid(self, notation) -> None:
        assert parse_dice(notation) is None


class TestRoll:
    def test_rolls_stay_in_range(self) -> None:
        rng = random.Random(42)
        for _ in range(200):
            outcome = roll(DiceSpec(3, 6, 2), rng)
            assert len(outcome.rolls) == 3
            assert all(1 <= r <= 6 for r in outcome.rolls)
            assert outcome.total == sum(outcome.rolls) + 2

    def test_seeded_rolls_are_repeatable(self) -> None:
        a = roll_dice("4d6", random.Random(7))
        b = roll_dice("4d6", random.Random(7))
        assert a.rolls == b.rolls

    def test_single_die_reaches_every_face(self) -> None:
        rng = random.Random(1)
        seen = {roll_dice("d4", rng).total for _ in range(200)}
        assert seen == {1, 2, 3, 4}

    def test_invalid_notation_raises(self) -> None:
        with pytest.raises(ValueError, match="Invalid dice notation"):
            roll_dice("lots of dice")


class TestRerollReported:
    def test_keeps_modifier_and_recomputes_success(self) -> None:
        reported = DiceRoll(type="d20", result=20, modifier=3, total=23, purpose="Attack", difficulty=15)
        [rerolled] = reroll_reported([reported], random.Random(3))
        assert 1 <= rerolled.result <= 20
        assert rerolled.total == rerolled.result + 3
        assert rerolled.success == (rerolled.total >= 15)
        assert rerolled.purpose == "Attack"

    def test_notation_modifier_used_when_model_omits_one(self) -> None:
        reported = DiceRoll(type="1d4+2", result=1, total=3)
        [rerolled] = reroll_reported([reported], random.Random(5))
        assert rerolled.total == rerolled.result + 2
        assert rerolled.success is None

    def test_non_notation_passes_through(self) -> None:
        reported = DiceRoll(type="percentile", result=55, total=55)
        assert reroll_reported([reported]) == [reported]
