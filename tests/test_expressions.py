import pytest

from forgegraph.service.expressions import evaluate_condition, safe_eval_expr
from forgegraph.service.state import RunState


class TestSafeEvalExpr:
    @pytest.mark.parametrize(
        "expr,expected",
        [
            ("state['a'] + 2 * 3", 7),
            ("state['a'] in [1, 2]", True),
            ("'hi' if state['a'] > 5 else 'lo'", "lo"),
            ("state['nested']['k'] == 'v'", True),
            ("not state['flag'] or state['a'] == 1", True),
            ("state['flag'] == false", True),
            ("null is None", True),
            ("1 < state['a'] < 3", False),
        ],
    )
    def test_allowed_expressions(self, expr, expected):
        state = {"a": 1, "flag": False, "nested": {"k": "v"}}
        assert safe_eval_expr(expr, {"state": state}) == expected

    @pytest.mark.parametrize(
        "expr",
        [
            "state.keys()",
            "__import__('os')",
            "(lambda: 1)()",
            "[x for x in state]",
            "(y := 1)",
            "state['a'] ** 2",
            "unknown_name",
            "state[",
            "'x' * 99999999999",
            "99999999999 * [0]",
        ],
    )
    def test_rejected_expressions(self, expr):
        with pytest.raises(ValueError):
            safe_eval_expr(expr, {"state": {"a": 1}})

    def test_missing_key_is_value_error(self):
        with pytest.raises(ValueError, match="invalid subscript"):
            safe_eval_expr("state['missing']", {"state": {}})


class TestEvaluateCondition:
    def test_truthiness_is_coerced(self):
        assert evaluate_condition("state['items']", {"items": [1]}) is True
        assert evaluate_condition("state['items']", {"items": []}) is False

    def test_errors_evaluate_false(self):
        assert evaluate_condition("state['x'] / 0", {"x": 1}) is False
        assert evaluate_condition("state['x'] > 'a'", {"x": 1}) is False
        assert evaluate_condition("state.x", {"x": 1}) is False

    def test_oversized_repetition_evaluates_false(self):
        assert evaluate_condition("state['s'] * 99999999999 == ''", {"s": "x"}) is False
        assert evaluate_condition("'ab' * 3 == 'ababab'", {}) is True


class TestRunState:
    def test_merge_overwrites_and_keeps_keys(self):
        state = RunState({"a": 1, "b": 2})

        merged = state.merge({"b": 3, "c": 4})

        assert merged == {"a": 1, "b": 3, "c": 4}
        assert state == {"a": 1, "b": 2}

    def test_is_read_only(self):
        state = RunState({"a": 1})

        with pytest.raises(TypeError):
            state["a"] = 2

    def test_input_is_copied(self):
        source = {"items": [1]}
        state = RunState(source)

        source["items"].append(2)

        assert state["items"] == [1]

    def test_to_dict_is_detached(self):
        state = RunState({"items": [1]})

        snapshot = state.to_dict()
        snapshot["items"].append(2)

        assert state["items"] == [1]

    def test_merge_none_returns_equal_state(self):
        state = RunState({"a": 1})

        assert state.merge(None) == state
        assert state.merge({}) is not state
