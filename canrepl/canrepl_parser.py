"""
Parsing entry points: scripts (``Commands``), single commands, expressions,
types and Candid interface files.
"""
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from lark import Lark
from lark.exceptions import UnexpectedInput, UnexpectedCharacters, UnexpectedEOF, VisitError
from lark.lexer import PatternStr

from canrepl.canrepl_errors import ParseError, ReplError
from canrepl.canrepl_lexer import Span, preprocess, strip_comments, span_at
from canrepl.canrepl_transformer import ReplTransformer, DidTransformer
from canrepl.canrepl_datatypes import Command

GRAMMAR_DIR = Path(__file__).parent / "grammar"


def _grammar(*names: str) -> str:
    return "\n".join((GRAMMAR_DIR / n).read_text(encoding="utf-8") for n in names)


class ReplParser:
    """Wraps the lark parsers; grammars are compiled once per process."""

    _script: Optional[Lark] = None
    _did: Optional[Lark] = None

    def __init__(self):
        if ReplParser._script is None:
            ReplParser._script = Lark(
                _grammar("common.lark", "script.lark"),
                start=["commands", "command", "exp", "datatype"],
                parser="earley", lexer="basic",
                propagate_positions=True, maybe_placeholders=False,
            )
        if ReplParser._did is None:
            ReplParser._did = Lark(
                _grammar("common.lark", "candid.lark"),
                start="prog", parser="earley", lexer="basic", maybe_placeholders=False,
            )
        self.transformer = ReplTransformer()
        self.did_transformer = DidTransformer()

    def _describe(self, lark: Lark, name: str) -> str:
        try:
            term = lark.get_terminal(name)
        except KeyError:
            return name
        if isinstance(term.pattern, PatternStr):
            return repr(term.pattern.value)
        return name

    def _parse_error(self, lark: Lark, e: UnexpectedInput, source: str) -> ParseError:
        match e:
            case UnexpectedEOF():
                expected = e.expected
                msg = "unexpected end of input"
                span = span_at(source, len(source))
            case UnexpectedCharacters():
                expected = e.allowed or ()
                msg = f"unexpected character {source[e.pos_in_stream]!r}"
                span = span_at(source, e.pos_in_stream, e.pos_in_stream + 1)
            case _:
                tok = e.token
                expected = e.expected
                if tok.type == "$END":
                    msg = "unexpected end of input"
                    span = span_at(source, len(source))
                else:
                    msg = f"unexpected token {str(tok)!r}"
                    span = Span(tok.start_pos, tok.end_pos, tok.line, tok.column)
        names = [self._describe(lark, n) for n in expected]
        if names:
            msg = f"{msg}, expected one of: {', '.join(sorted(set(names)))}"
        return ParseError(msg, span, names)

    def _run(self, lark: Lark, transformer, source: str, start: Optional[str]):
        try:
            tree = lark.parse(source, start=start) if start else lark.parse(source)
        except UnexpectedInput as e:
            raise self._parse_error(lark, e, source) from None
        try:
            return transformer.transform(tree)
        except VisitError as e:
            if isinstance(e.orig_exc, ReplError):
                raise e.orig_exc from None
            raise

    def parse_commands(self, source: str, environ: Optional[Mapping[str, str]] = None
                       ) -> List[Tuple[Command, Span]]:
        """Parse a whole script; each command is paired with its source span."""
        text = preprocess(source, environ)
        cmds = self._run(self._script, self.transformer, text, "commands")
        return [(cmd, cmd.span) for cmd in cmds]

    def parse_command(self, source: str, environ: Optional[Mapping[str, str]] = None) -> Command:
        return self._run(self._script, self.transformer, preprocess(source, environ), "command")

    def parse_exp(self, source: str, environ: Optional[Mapping[str, str]] = None):
        return self._run(self._script, self.transformer, preprocess(source, environ), "exp")

    def parse_type(self, source: str):
        return self._run(self._script, self.transformer, strip_comments(source), "datatype")

    def parse_did(self, source: str) -> list:
        return self._run(self._did, self.did_transformer, strip_comments(source), None)
