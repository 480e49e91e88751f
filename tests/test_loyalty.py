"""
Tests for the loyalty rules.
"""

import pytest

import loyalty


class TestParsing:

    @pytest.mark.parametrize("value,expected", [
        ("3", 3), (3.7, 3), ("12.9", 12), (0, 0), (None, None), ("abc", None), ("", None), (True, None),
        ("12abc", 12), (" 7 zł", 7), ("-3", -3), ("zł 7", None),
    ])
    def test_parse_int(self, value, expected):
        assert loyalty.parse_int(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("95", 95), (12.5, 12.5), ("", 0), ("abc", 0), (None, 0), ("inf", 0),
    ])
    def test_parse_number(self, value, expected):
        assert loyalty.parse_number(value) == expected

    def test_parse_number_returns_int_for_whole_values(self):
        assert isinstance(loyalty.parse_number("100.0"), int)


class TestPoints:

    def test_amount_converts_at_ten_per_point(self):
        assert loyalty.resolve_points(None, 95) == 9

    def test_explicit_points_win_over_amount(self):
        assert loyalty.resolve_points("3", 500) == 3

    def test_non_positive_points_fall_back_to_amount(self):
        assert loyalty.resolve_points(-4, 40) == 4

    @pytest.mark.parametrize("points,amount", [(None, 9), (0, 0), ("x", "y"), (None, None)])
    def test_rejects_zero_points(self, points, amount):
        with pytest.raises(ValueError):
            loyalty.resolve_points(points, amount)

    def test_unknown_op_is_add(self):
        assert loyalty.normalize_op("sub") == "sub"
        assert loyalty.normalize_op("remove") == "add"
        assert loyalty.normalize_op(None) == "add"

    def test_sub_clamps_at_zero(self):
        assert loyalty.apply_points(5, 20, "sub") == 0
        assert loyalty.apply_points(9, 3, "sub") == 6
        assert loyalty.apply_points(None, 3, "add") == 3


class TestPrepaid:

    def test_balance_falls_back_to_total_then_value(self):
        assert loyalty.current_balance({"balance": 10, "total": 50, "value": 40}) == 10
        assert loyalty.current_balance({"total": 50, "value": 40}) == 50
        assert loyalty.current_balance({"value": 40}) == 40
        assert loyalty.current_balance({}) == 0

    def test_zero_balance_is_not_replaced_by_total(self):
        assert loyalty.adjust_balance({"balance": 0, "total": 100}, 5) == 5

    def test_negative_result_rejected(self):
        with pytest.raises(ValueError):
            loyalty.adjust_balance({"balance": 60}, -61)

    def test_default_notes(self):
        assert loyalty.default_adjust_note(10) == loyalty.TOP_UP_NOTE
        assert loyalty.default_adjust_note(-10) == loyalty.DEDUCTION_NOTE

    def test_card_code_is_six_digits(self):
        for _ in range(50):
            code = loyalty.generate_card_code()
            assert len(code) == 6 and code.isdigit()


def test_summarize():
    users = [{"id": "a", "points": 4}, {"id": "b", "points": 6}, {"id": "c", "points": None}]
    ops = [{"op": "add"}, {"op": "sub"}, {"op": "sub"}]
    orders = [{"status": "Przyjęte"}, {"status": "WYDANE"}, {"status": "wydane"}, {}]
    cards = [{"code": "123456"}]

    assert loyalty.summarize(users, ops, orders, cards) == {
        "users": 3,
        "pointsTotal": 10,
        "redeems": 2,
        "ordersActive": 2,
        "prepaid": 1,
    }
