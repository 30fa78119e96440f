import unittest

from open_core.errors import EditMatchError
from open_core.tools.edit.replacers import (
    indentation_flexible_replacer,
    levenshtein,
    line_similarity,
    replace,
)

_TWO_BLOCKS = (
    "def f():\n"
    "    abcdeXXXXX\n"
    "    return 1\n"
    "\n"
    "def f():\n"
    "    abcdefghXX\n"
    "    return 1\n"
)


class ReplaceCascadeTests(unittest.TestCase):
    def test_exact_match_uses_simple_strategy(self) -> None:
        result = replace("a = 1\nb = 2\n", "b = 2", "b = 3")
        self.assertEqual("a = 1\nb = 3\n", result.content)
        self.assertEqual("simple", result.strategy)
        self.assertEqual(1, result.count)

    def test_line_trimmed_matches_indented_content(self) -> None:
        result = replace("  foo\n  bar\n", "foo\nbar", "baz")
        self.assertEqual("line_trimmed", result.strategy)
        self.assertEqual("baz\n", result.content)

    def test_block_anchor_picks_most_similar_block(self) -> None:
        search = "def f():\n    abcdefghij\n    return 1"
        result = replace(_TWO_BLOCKS, search, "def g():\n    pass")
        self.assertEqual("block_anchor", result.strategy)
        self.assertEqual(
            "def f():\n    abcdeXXXXX\n    return 1\n\ndef g():\n    pass\n",
            result.content,
        )

    def test_block_anchor_below_threshold_fails(self) -> None:
        content = (
            "def f():\n    abcdeXXXXX\n    return 1\n"
            "\n"
            "def f():\n    ZZZZZZZZZZ\n    return 1\n"
        )
        with self.assertRaises(EditMatchError) as ctx:
            replace(content, "def f():\n    abcdefghij\n    return 1", "x")
        self.assertFalse(ctx.exception.ambiguous)

    def test_single_block_anchor_candidate_is_accepted(self) -> None:
        content = "class A:\n    first = 1\n    second = 2\n    end = True\n"
        search = "class A:\n    totally different\n    end = True"
        result = replace(content, search, "class B:\n    pass")
        self.assertEqual("block_anchor", result.strategy)
        self.assertEqual("class B:\n    pass\n", result.content)

    def test_whitespace_normalized(self) -> None:
        result = replace("call(a,   b)\n", "call(a, b)", "call(a)")
        self.assertEqual("whitespace_normalized", result.strategy)
        self.assertEqual("call(a)\n", result.content)

    def test_escape_normalized(self) -> None:
        content = 'x = "a\nb"\n'
        result = replace(content, 'x = "a\\nb"', "x = None")
        self.assertEqual("escape_normalized", result.strategy)
        self.assertEqual("x = None\n", result.content)

    def test_ambiguous_match_raises(self) -> None:
        with self.assertRaises(EditMatchError) as ctx:
            replace("x = 1\nx = 1\n", "x = 1", "x = 2")
        self.assertTrue(ctx.exception.ambiguous)

    def test_replace_all_replaces_every_occurrence(self) -> None:
        result = replace("x = 1\ny\nx = 1\n", "x = 1", "x = 2", replace_all=True)
        self.assertEqual("x = 2\ny\nx = 2\n", result.content)
        self.assertEqual(2, result.count)
        self.assertEqual("simple", result.strategy)

    def test_replace_all_with_trimmed_lines(self) -> None:
        content = "  a\n  b\nx\n    a\n    b\n"
        result = replace(content, "a\nb", "Z", replace_all=True)
        self.assertEqual("line_trimmed", result.strategy)
        self.assertEqual(2, result.count)
        self.assertEqual("Z\nx\nZ\n", result.content)

    def test_not_found_raises(self) -> None:
        with self.assertRaises(EditMatchError) as ctx:
            replace("alpha\n", "beta", "gamma")
        self.assertFalse(ctx.exception.ambiguous)

    def test_identical_strings_rejected(self) -> None:
        with self.assertRaises(ValueError):
            replace("abc", "abc", "abc")

    def test_empty_search_rejected(self) -> None:
        with self.assertRaises(ValueError):
            replace("abc", "", "x")


class SimilarityHelperTests(unittest.TestCase):
    def test_levenshtein(self) -> None:
        self.assertEqual(3, levenshtein("kitten", "sitting"))
        self.assertEqual(0, levenshtein("same", "same"))
        self.assertEqual(4, levenshtein("", "abcd"))

    def test_line_similarity(self) -> None:
        self.assertEqual(1.0, line_similarity("", ""))
        self.assertAlmostEqual(0.8, line_similarity("abcdefghXX", "abcdefghij"))
        self.assertAlmostEqual(0.5, line_similarity("abcdeXXXXX", "abcdefghij"))

    def test_indentation_flexible_allows_uniform_shift(self) -> None:
        content = "class A:\n    def f(self):\n        return 1\n"
        search = "def f(self):\n    return 1"
        matches = list(indentation_flexible_replacer(content, search))
        self.assertEqual(["    def f(self):\n        return 1"], matches)

    def test_indentation_flexible_rejects_uneven_shift(self) -> None:
        content = "    def f(self):\n      return 1\n"
        search = "def f(self):\n    return 1"
        self.assertEqual([], list(indentation_flexible_replacer(content, search)))


if __name__ == "__main__":
    unittest.main()
