import json
import unittest

from flagcore import Tri, evaluate_condition_tree, evaluate_custom_attribute


T, F, U = Tri.TRUE, Tri.FALSE, Tri.UNKNOWN


def _leaf(node):
    return {"t": T, "f": F, "u": U}[node]


class TestTri(unittest.TestCase):
    def test_truth_tables(self):
        cases = [
            # combinator, operands, expected
            (Tri.and_, [T, U], U),
            (Tri.and_, [F, U], F),
            (Tri.and_, [U, F], F),
            (Tri.and_, [T, T], T),
            (Tri.and_, [], T),
            (Tri.or_, [F, U], U),
            (Tri.or_, [T, U], T),
            (Tri.or_, [U, T], T),
            (Tri.or_, [F, F], F),
            (Tri.or_, [], F),
        ]
        for combinator, operands, expected in cases:
            with self.subTest(f"{combinator.__name__}({operands})"):
                self.assertIs(combinator(operands), expected)

    def test_negate_and_collapse(self):
        self.assertIs(T.negate(), F)
        self.assertIs(F.negate(), T)
        self.assertIs(U.negate(), U)
        self.assertIs(T.collapse(), True)
        self.assertIs(F.collapse(), False)
        self.assertIs(U.collapse(), False)
        self.assertIs(Tri.of(True), T)
        self.assertIs(Tri.of(False), F)
        self.assertIs(Tri.of(None), U)

    def test_no_implicit_truth_value(self):
        for t in Tri:
            with self.subTest(t.name):
                with self.assertRaises(TypeError):
                    bool(t)


class TestConditionTree(unittest.TestCase):
    def test_evaluate(self):
        cases = [
            # tree, expected
            ("t", T),
            ("u", U),
            (["and", "t", "u"], U),
            (["and", "f", "u"], F),
            (["or", "f", "u"], U),
            (["or", "t", "u"], T),
            (["not"], U),
            (["not", "t"], F),
            (["not", "f"], T),
            (["not", "u"], U),
            (["not", "f", "t"], T),  # only the first operand counts
            (["and"], T),
            (["or"], F),
            # Lists without an operator are OR-ed.
            ([], F),
            (["f", "t"], T),
            (["f", "f"], F),
            (["f", "u"], U),
            # Nesting
            (["and", ["or", "f", "t"], ["not", "f"]], T),
            (["and", ["or", "f", "u"], ["not", "f"]], U),
            (["or", ["and", "t", "f"], ["not", ["or", "u"]]], U),
            (("and", "t", "t"), T),
            # Neither leaves nor lists
            (42, U),
            (None, U),
            ({1: "x"}, U),
        ]
        for tree, expected in cases:
            with self.subTest(repr(tree)):
                self.assertIs(evaluate_condition_tree(tree, _leaf), expected)

    def test_dict_leaves(self):
        seen = []

        def leaf(node):
            seen.append(node)
            return T if node["value"] else F

        tree = ["and", {"value": 1}, ["or", {"value": 0}, {"value": 2}]]
        self.assertIs(evaluate_condition_tree(tree, leaf), T)
        self.assertEqual(seen, [{"value": 1}, {"value": 0}, {"value": 2}])

    def test_short_circuit(self):
        seen = []

        def leaf(node):
            seen.append(node)
            return _leaf(node)

        self.assertIs(evaluate_condition_tree(["and", "f", "t", "u"], leaf), F)
        self.assertEqual(seen, ["f"])
        seen.clear()
        self.assertIs(evaluate_condition_tree(["or", "u", "t", "f"], leaf), T)
        self.assertEqual(seen, ["u", "t"])

    def test_input_is_not_mutated(self):
        tree = ["and", "t", ["not", "f"]]
        evaluate_condition_tree(tree, _leaf)
        self.assertEqual(tree, ["and", "t", ["not", "f"]])


def _cond(match, value, name="a"):
    c = {"name": name, "type": "custom_attribute", "value": value}
    if match is not None:
        c["match"] = match
    return c


class TestCustomAttribute(unittest.TestCase):
    def test_evaluate(self):
        cases = [
            # condition, attributes, expected
            # exact
            (_cond(None, "x"), {"a": "x"}, T),
            (_cond("exact", "x"), {"a": "y"}, F),
            (_cond("exact", 42), {"a": 42}, T),
            (_cond("exact", 42), {"a": 42.0}, T),
            (_cond("exact", 42.5), {"a": 42}, F),
            (_cond("exact", True), {"a": True}, T),
            (_cond("exact", False), {"a": True}, F),
            (_cond("exact", 42), {"a": "42"}, U),
            (_cond("exact", True), {"a": 1}, U),
            (_cond("exact", 1), {"a": True}, U),
            (_cond("exact", "x"), {"a": ["x"]}, U),
            (_cond("exact", float("inf")), {"a": 1}, U),
            (_cond("exact", [1]), {"a": 1}, U),
            (_cond("exact", None), {"a": 1}, U),
            (_cond("exact", 5), {"a": 2**53 + 1}, U),
            (_cond("exact", 5), {"a": float("nan")}, U),
            (_cond("exact", "x"), {}, U),
            (_cond("exact", "x"), {"a": None}, U),
            # exists
            (_cond("exists", None), {"a": "x"}, T),
            (_cond("exists", None), {"a": False}, T),
            (_cond("exists", None), {"a": 0}, T),
            (_cond("exists", None), {"a": None}, F),
            (_cond("exists", None), {}, F),
            (_cond("exists", None), {"b": 1}, F),
            # numbers
            (_cond("gt", 10), {"a": 11}, T),
            (_cond("gt", 10), {"a": 10}, F),
            (_cond("ge", 10), {"a": 10}, T),
            (_cond("ge", 10), {"a": 9.99}, F),
            (_cond("lt", 10), {"a": 9}, T),
            (_cond("lt", 10), {"a": 10}, F),
            (_cond("le", 10), {"a": 10.0}, T),
            (_cond("le", 10), {"a": 11}, F),
            (_cond("gt", 10.5), {"a": 11}, T),
            (_cond("gt", "10"), {"a": 11}, U),
            (_cond("gt", True), {"a": 11}, U),
            (_cond("gt", float("nan")), {"a": 11}, U),
            (_cond("gt", 10), {"a": "11"}, U),
            (_cond("gt", 10), {"a": True}, U),
            (_cond("gt", 10), {"a": float("inf")}, U),
            (_cond("lt", 10), {"a": -(2**53) - 2}, U),
            (_cond("lt", 10), {}, U),
            # substring
            (_cond("substring", "ell"), {"a": "hello"}, T),
            (_cond("substring", "xyz"), {"a": "hello"}, F),
            (_cond("substring", "ell"), {"a": 5}, U),
            (_cond("substring", 5), {"a": "5"}, U),
            # semver
            (_cond("semver_eq", "2.0"), {"a": "2.0.1"}, T),
            (_cond("semver_eq", "2.0.0"), {"a": "2.0.1"}, F),
            (_cond("semver_lt", "2.0.0"), {"a": "2.0.0-beta"}, T),
            (_cond("semver_gt", "2.0.0"), {"a": "2.0.0-beta"}, F),
            (_cond("semver_ge", "2.1"), {"a": "2.1.9"}, T),
            (_cond("semver_ge", "2.1"), {"a": "2.0.9"}, F),
            (_cond("semver_le", "2.1"), {"a": "2.0.9"}, T),
            (_cond("semver_gt", "2.1"), {"a": "3"}, T),
            (_cond("semver_eq", ""), {"a": "1.0"}, U),
            (_cond("semver_eq", 2), {"a": "2"}, U),
            (_cond("semver_eq", "2.0"), {"a": 2}, U),
            (_cond("semver_eq", "2.0"), {"a": "2 .0"}, U),
            (_cond("semver_eq", "1.2.3.4"), {"a": "1.2.3"}, U),
        ]
        for condition, attributes, expected in cases:
            with self.subTest(f"{condition}, {attributes}"):
                self.assertIs(evaluate_custom_attribute(condition, attributes), expected)

    def test_unknown_condition_type_and_match(self):
        reasons = []
        result = evaluate_custom_attribute({"name": "a", "type": "third_party", "value": 1}, {"a": 1}, reasons)
        self.assertIs(result, U)
        self.assertEqual(reasons, ['Audience condition {"name": "a", "type": "third_party", "value": 1} uses an unknown condition type.'])

        for condition in ("oops", ["a"], 42, None):
            with self.subTest(repr(condition)):
                reasons = []
                self.assertIs(evaluate_custom_attribute(condition, {"a": 1}, reasons), U)
                self.assertEqual(reasons, [f"Audience condition {json.dumps(condition)} uses an unknown condition type."])

        reasons = []
        result = evaluate_custom_attribute({"name": "a", "type": "custom_attribute"}, {"a": 1}, reasons)
        self.assertIs(result, U)

        reasons = []
        result = evaluate_custom_attribute(_cond("regex", "^a"), {"a": "abc"}, reasons)
        self.assertIs(result, U)
        self.assertEqual(reasons, ['Audience condition {"name": "a", "type": "custom_attribute", "value": "^a", "match": "regex"} uses an unknown match type.'])

    def test_reasons(self):
        cases = [
            # condition, attributes, reason fragment
            (_cond("exact", "x"), {}, 'because no value was passed for user attribute "a".'),
            (_cond("exact", "x"), {"a": None}, 'because a null value was passed for user attribute "a".'),
            (_cond("exact", [1]), {"a": 1}, "has an unsupported condition value."),
            (_cond("exact", 42), {"a": "42"}, 'because a value of type "str" was passed for user attribute "a".'),
            (_cond("gt", 1), {"a": True}, 'because a value of type "bool" was passed for user attribute "a".'),
            (_cond("gt", 1), {"a": float("inf")}, 'because the number value for user attribute "a" is not in the range [-2^53, +2^53].'),
            (_cond("semver_eq", "1.0"), {"a": "1.0.0.0"}, 'because of an invalid version format for user attribute "a".'),
        ]
        for condition, attributes, fragment in cases:
            with self.subTest(fragment):
                reasons = []
                self.assertIs(evaluate_custom_attribute(condition, attributes, reasons), U)
                self.assertEqual(len(reasons), 1)
                self.assertIn(fragment, reasons[0])

    def test_no_reasons_for_known_results(self):
        reasons = []
        self.assertIs(evaluate_custom_attribute(_cond("exact", "x"), {"a": "x"}, reasons), T)
        self.assertIs(evaluate_custom_attribute(_cond("exists", None), {}, reasons), F)
        self.assertEqual(reasons, [])

    def test_missing_attributes(self):
        self.assertIs(evaluate_custom_attribute(_cond("exists", None), None), F)
        self.assertIs(evaluate_custom_attribute(_cond("exact", "x"), None), U)
