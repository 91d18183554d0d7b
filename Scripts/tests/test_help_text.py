from __future__ import annotations

import pathlib
import sys
import unittest

SCRIPT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from help_text import (
    is_valid_help_content,
    parse_heuristic,
    parse_heuristic_with_notes,
    parse_man_list_line,
    parse_option_line,
    strip_ansi_codes,
)

MYCMD_HELP = "mycmd - A test command\n\nUsage: mycmd [OPTIONS] <FILE>\n\nOptions:\n  -v, --verbose  Enable verbose output\n"

MAN_PAGE = """LS(1)                     User Commands                    LS(1)

NAME
       ls - list directory contents

SYNOPSIS
       ls [OPTION]... [FILE]...
"""

GREP_HELP = """Usage: grep [OPTION]... PATTERNS [FILE]...
Search for PATTERNS in each FILE.

Examples:
Search for hello in two files:
  grep -i 'hello world' menu.h main.c
  grep -r TODO src  # search a tree recursively
"""


class HeuristicParserTests(unittest.TestCase):
    def test_option_derived_example_when_no_example_lines(self) -> None:
        cmd = parse_heuristic("mycmd", MYCMD_HELP, "--help")
        self.assertEqual(cmd.description, "A test command")
        self.assertEqual(len(cmd.examples), 1)
        self.assertEqual(cmd.examples[0].description, "Enable verbose output")
        self.assertEqual(cmd.examples[0].code, "mycmd --verbose")
        self.assertEqual(cmd.lang, "local")
        self.assertEqual(cmd.category, "local")
        self.assertTrue(cmd.content.startswith("Source: --help\n\n"))

    def test_notes_flag_option_examples(self) -> None:
        result = parse_heuristic_with_notes("mycmd", MYCMD_HELP, "--help")
        self.assertFalse(result.synthetic_description)
        self.assertTrue(result.option_examples)
        self.assertIn("examples were derived from option flags", result.notes())

    def test_man_page_name_section(self) -> None:
        cmd = parse_heuristic("ls", MAN_PAGE, "man")
        self.assertEqual(cmd.description, "list directory contents")

    def test_example_lines_take_preceding_description(self) -> None:
        cmd = parse_heuristic("grep", GREP_HELP, "--help")
        self.assertEqual(cmd.description, "Search for PATTERNS in each FILE.")
        self.assertEqual(len(cmd.examples), 2)
        self.assertEqual(cmd.examples[0].description, "Search for hello in two files")
        self.assertEqual(cmd.examples[0].code, "grep -i 'hello world' menu.h main.c")
        self.assertEqual(cmd.examples[1].description, "search a tree recursively")

    def test_dash_operand_lines_stay_examples(self) -> None:
        text = "mycmd - A test command\n\nExamples:\n  Read from stdin:\n  mycmd -o out.txt - < in.txt\n"
        cmd = parse_heuristic("mycmd", text, "--help")
        self.assertEqual(cmd.description, "A test command")
        self.assertEqual([(ex.description, ex.code) for ex in cmd.examples], [("Read from stdin", "mycmd -o out.txt - < in.txt")])

    def test_man_name_line_with_aliases_is_not_an_example(self) -> None:
        cmd = parse_heuristic("gzip", "gzip, gunzip(1) - compress or expand files\n", "man")
        self.assertEqual(cmd.description, "compress or expand files")
        self.assertEqual(cmd.examples, [])

    def test_dollar_prefix_and_cap(self) -> None:
        text = "\n".join(f"$ tool run {i}" for i in range(15))
        cmd = parse_heuristic("tool", text, "-h")
        self.assertEqual(len(cmd.examples), 10)
        self.assertEqual(cmd.examples[0].code, "tool run 0")
        self.assertEqual(cmd.examples[0].description, "Example usage")

    def test_option_examples_cap(self) -> None:
        flags = "\n".join(f"  --flag{i}  Flag number {i}" for i in range(8))
        cmd = parse_heuristic("tool", f"Options:\n{flags}\n", "--help")
        self.assertEqual(len(cmd.examples), 5)
        self.assertEqual(cmd.examples[4].code, "tool --flag4")

    def test_never_fails_and_reports_synthetic_description(self) -> None:
        result = parse_heuristic_with_notes("weird", "--only --flags\n-x\n", "--help")
        self.assertTrue(result.synthetic_description)
        self.assertEqual(result.command.description, "weird command (learned from local system)")
        self.assertEqual(result.command.examples, [])
        empty = parse_heuristic("blank", "", "man")
        self.assertEqual(empty.name, "blank")

    def test_description_stops_at_blank_line(self) -> None:
        text = "First line of text\nsecond line\n\nThird paragraph\n"
        cmd = parse_heuristic("x", text, "--help")
        self.assertEqual(cmd.description, "First line of text second line")


class HelpUtilityTests(unittest.TestCase):
    def test_parse_option_line(self) -> None:
        self.assertEqual(parse_option_line("-v, --verbose  Enable verbose mode"), ("--verbose", "Enable verbose mode"))
        self.assertEqual(parse_option_line("-q    Quiet"), ("-q", "Quiet"))
        self.assertIsNone(parse_option_line("--no-description"))
        self.assertIsNone(parse_option_line("-v, --verbose   "))

    def test_parse_man_list_line(self) -> None:
        self.assertEqual(parse_man_list_line("docker-ps (1) - list containers", "1"), ("docker-ps", "list containers"))
        self.assertEqual(parse_man_list_line("git-log(1), git log(1) - Show commit logs", "1"), ("git-log", "Show commit logs"))
        self.assertIsNone(parse_man_list_line("printf (3) - formatted output", "1"))
        self.assertEqual(parse_man_list_line("ls (1,8)", "1"), ("ls", ""))

    def test_strip_ansi_codes(self) -> None:
        self.assertEqual(strip_ansi_codes("\x1b[1mbold\x1b[0m text"), "bold text")
        self.assertEqual(strip_ansi_codes("N\bNA\bAM\bME\bE"), "NAME")
        self.assertEqual(strip_ansi_codes("_\bu_\bl"), "ul")

    def test_is_valid_help_content(self) -> None:
        self.assertTrue(is_valid_help_content("usage: x"))
        self.assertTrue(is_valid_help_content("z" * 51))
        self.assertFalse(is_valid_help_content("short"))
        self.assertFalse(is_valid_help_content("   \n"))
        self.assertFalse(is_valid_help_content("  x  " + " " * 60 + "\n" * 10))


if __name__ == "__main__":
    unittest.main()
