#!/usr/bin/env python3
"""
CJK-aware tokenization shared by the indexing and query paths.

`Tokenizer` wraps its own `jieba.Tokenizer` instance instead of the module
level default, so an index and its tests never share dictionary state.
"""

from __future__ import annotations

import logging
from typing import List

import jieba

QUERY_SPECIAL_CHARS = frozenset('+-!(){}[]^"~*?:\\/')
SEGMENTATION_MODES = ("default", "search")

jieba.setLogLevel(logging.WARNING)


def escape_special_chars(token: str) -> str:
    return "".join("\\" + ch if ch in QUERY_SPECIAL_CHARS else ch for ch in token)


class Tokenizer:
    def __init__(self, mode: str = "default", dictionary: str | None = None) -> None:
        if mode not in SEGMENTATION_MODES:
            raise ValueError(f"unknown segmentation mode: {mode}")
        self.mode = mode
        self._jieba = jieba.Tokenizer(dictionary) if dictionary else jieba.Tokenizer()

    def tokens(self, text: str) -> List[str]:
        if not text:
            return []
        if self.mode == "search":
            pieces = self._jieba.cut_for_search(text, HMM=True)
        else:
            pieces = self._jieba.cut(text, HMM=True)
        return [piece.strip() for piece in pieces if piece.strip()]

    def tokenize(self, text: str) -> str:
        """Segment `text` into space separated tokens for the index analyzer."""
        return " ".join(self.tokens(text))

    def tokenize_and_escape(self, query: str) -> str:
        """Segment a user query and escape every query-syntax character once."""
        return " ".join(escape_special_chars(token) for token in self.tokens(query))
