"""Answer parsing."""

from .answer_parser import AnswerParser, ParseResult, parse

__all__ = ["AnswerParser", "ParseResult", "parse"]
