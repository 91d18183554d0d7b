from __future__ import annotations

import pathlib
import sys
import unittest

SCRIPT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from query_syntax import compile_query
from query_tokens import QUERY_SPECIAL_CHARS, Tokenizer, escape_special_chars

ADVERSARIAL_QUERIES = [
    "",
    "   ",
    "docker ps -a --format '{{.Names}}'",
    '+-!(){}[]^"~*?:\\/',
    "\\",
    "\\\\\\",
    "AND OR NOT",
    "NOT",
    "a AND",
    "OR b",
    "(((",
    ")))",
    '"unterminated',
    "lang:en",
    "name:(docker",
    "foo:bar",
    "使用docker复制文件到容器",
    "查找 文件 -name *.py",
    "C++ && || ; rm -rf /",
    "emoji 🚀 test",
    "~user/path?query=1&x[0]=^2",
]


def unescaped_specials(text: str) -> list:
    found = []
    idx = 0
    while idx < len(text):
        ch = text[idx]
        if ch == "\\":
            idx += 2
            continue
        if ch in QUERY_SPECIAL_CHARS:
            found.append(ch)
        idx += 1
    return found


class EscapeTests(unittest.TestCase):
    def test_escape_prefixes_each_special_once(self) -> None:
        self.assertEqual(escape_special_chars("a-b"), "a\\-b")
        self.assertEqual(escape_special_chars("{x}"), "\\{x\\}")
        self.assertEqual(escape_special_chars("\\"), "\\\\")
        self.assertEqual(escape_special_chars("plain"), "plain")


class TokenizerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.tokenizer = Tokenizer()

    def test_docker_query_is_fully_escaped(self) -> None:
        escaped = self.tokenizer.tokenize_and_escape("docker ps -a --format '{{.Names}}'")
        self.assertIn("docker", escaped)
        self.assertIn("\\-", escaped)
        self.assertIn("\\{", escaped)
        self.assertIn("\\}", escaped)
        self.assertEqual(unescaped_specials(escaped), [])

    def test_every_query_compiles_after_escaping(self) -> None:
        for query in ADVERSARIAL_QUERIES:
            with self.subTest(query=query):
                escaped = self.tokenizer.tokenize_and_escape(query)
                self.assertEqual(unescaped_specials(escaped), [])
                compile_query(escaped)

    def test_mixed_cjk_is_segmented(self) -> None:
        tokens = self.tokenizer.tokens("使用docker复制文件")
        self.assertIn("docker", tokens)
        self.assertGreater(len(tokens), 2)
        for token in tokens:
            has_latin = any("a" <= ch.lower() <= "z" for ch in token)
            has_cjk = any("一" <= ch <= "鿿" for ch in token)
            self.assertFalse(has_latin and has_cjk, token)

    def test_tokenize_joins_with_single_spaces(self) -> None:
        self.assertEqual(self.tokenizer.tokenize("  hello   world \n"), "hello world")
        self.assertEqual(self.tokenizer.tokenize(""), "")

    def test_search_mode_is_accepted(self) -> None:
        tokenizer = Tokenizer(mode="search")
        self.assertIn("docker", tokenizer.tokens("docker 容器"))
        with self.assertRaises(ValueError):
            Tokenizer(mode="bogus")


if __name__ == "__main__":
    unittest.main()
