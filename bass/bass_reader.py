"""
Reads Bass source text into Annotated values.

Parsing is done by a small lark grammar; the Transformer turns the parse tree
into values, classifies bare words (numbers, paths, commands, keywords and
symbols) and attaches comments and meta to the forms they belong to.
"""
import re
from typing import Any, List, Optional

from lark import Lark, Token, Transformer, v_args
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken, VisitError

from bass.bass_datatypes import (
    Symbol, Keyword, Ignore, Empty, Pair, Cons, Bind, Annotated, Range,
    DirPath, FilePath, CommandPath, ExtendPath, unannotate,
)
from bass.bass_errors import EndOfSource, ReadError

GRAMMAR = r"""
start: (_form | COMMENT)*

_form: word
     | string
     | list
     | cons
     | bind
     | meta

word: WORD
string: STRING
list: "(" (_form | COMMENT)* ")"
cons: "[" (_form | COMMENT)* "]"
bind: "{" (_form | COMMENT)* "}"
meta: "^" _form _form

WORD: /[^\s()\[\]{}";^]+/
STRING: /"(\\[\s\S]|[^"\\])*"/
COMMENT: /;[^\n]*/

%import common.WS
%ignore WS
"""

SYM_TABLE = {
    "_": Ignore,
    "null": None,
    "true": True,
    "false": False,
}

ESCAPES = {
    '"': '"',
    "\\": "\\",
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "v": "\v",
    "f": "\f",
    "a": "\a",
}

PAIR_DELIMS = ("&", ".")

_INT_RE = re.compile(r"-?(0[xX][0-9a-fA-F]+|[0-9]+)")
_NUMERIC_START_RE = re.compile(r"-?[0-9]")

_parser = None


def _get_parser() -> Lark:
    global _parser
    if _parser is None:
        _parser = Lark(GRAMMAR, parser="lalr", propagate_positions=True)
    return _parser


# =================================================================
# Bare words
# =================================================================

def read_word(text: str) -> Any:
    """Classifies a bare word into a constant, number, path, keyword or symbol."""
    if text in SYM_TABLE:
        return SYM_TABLE[text]
    if _INT_RE.fullmatch(text):
        if "x" in text or "X" in text:
            return int(text, 16)
        return int(text, 10)
    if _NUMERIC_START_RE.match(text):
        raise ValueError("invalid number format")
    segments = text.split("/")
    if len(segments) > 1:
        return _read_path(segments)
    if text not in (".", "..") and text.startswith("."):
        return CommandPath(text[1:])
    return _read_keywords_or_symbol(text)


def _read_keywords_or_symbol(text: str) -> Any:
    segments = text.split(":")
    if len(segments) == 1:
        return Symbol(text)
    if segments[0] == "":
        value = Keyword(segments[1])
        rest = segments[2:]
    else:
        value = Symbol(segments[0])
        rest = segments[1:]
    # a:b:c reads as (:c (:b a))
    for name in rest:
        value = Pair(Keyword(name), Pair(value, Empty))
    return value


def _read_path(segments: List[str]) -> Any:
    start = segments[0]
    end = len(segments) - 1
    is_dir = segments[end] == ""
    if is_dir:
        end -= 1
    if start in (".", ".."):
        path = DirPath(start)
    elif start == "":
        path = DirPath("")
    else:
        path = _read_keywords_or_symbol(start)
    for i in range(1, end + 1):
        if i == end and not is_dir:
            child = FilePath(segments[i])
        else:
            child = DirPath(segments[i])
        path = ExtendPath(path, child)
    return path


def unescape(body: str) -> str:
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\":
            i += 1
            esc = body[i]
            if esc not in ESCAPES:
                raise ValueError(f"illegal escape sequence '\\{esc}'")
            out.append(ESCAPES[esc])
        else:
            out.append(ch)
        i += 1
    return "".join(out)


# =================================================================
# Comments
# =================================================================

def _comment_text(token: Token) -> str:
    return token.value.lstrip(";").strip(" ")


def _join_comment(lines: List[str]) -> str:
    paragraphs = []
    para: List[str] = []
    for line in lines:
        if line == "":
            paragraphs.append(" ".join(para))
            para = []
        else:
            para.append(line)
    if para:
        paragraphs.append(" ".join(para))
    return "\n\n".join(paragraphs)


def attach_comments(children: list) -> List[Annotated]:
    """Drops comment tokens, attaching them to the forms they precede or trail."""
    forms: List[Annotated] = []
    pending: List[Token] = []
    for child in children:
        if isinstance(child, Token) and child.type == "COMMENT":
            if forms and not pending:
                prev = forms[-1]
                if prev.range is not None and child.line == prev.range.end_line:
                    if not prev.comment:
                        prev.comment = _comment_text(child)
                    continue
            if pending and child.line > pending[-1].line + 1:
                # a blank line starts a new comment block
                pending = []
            pending.append(child)
            continue
        if pending:
            if not child.comment:
                child.comment = _join_comment([_comment_text(t) for t in pending])
            pending = []
        forms.append(child)
    return forms


def _split_dotted(forms: List[Annotated]):
    items = []
    tail = Empty
    dotted = False
    for form in forms:
        value = unannotate(form)
        if not dotted and isinstance(value, Symbol) and value.name in PAIR_DELIMS:
            dotted = True
            continue
        if dotted:
            tail = form
        else:
            items.append(form)
    return items, tail


def _desugar_meta(form: Annotated) -> List[Any]:
    value = unannotate(form)
    match value:
        case Bind():
            return list(value.items)
        case Keyword():
            return [value, True]
        case Symbol():
            return [Keyword("tag"), value]
        case str():
            return [Keyword("tag"), value]
    raise ValueError(f"bad syntax: meta (^): given {type(value).__name__}, need scope, keyword, symbol or string")


class BassTransformer(Transformer):
    """Builds Annotated values from the parse tree."""

    def __init__(self, filename: str):
        super().__init__()
        self.filename = filename

    def _range(self, meta) -> Optional[Range]:
        if getattr(meta, "empty", True):
            return None
        return Range(self.filename, meta.line, meta.column, meta.end_line, meta.end_column)

    def _annotate(self, value, meta) -> Annotated:
        return Annotated(value, self._range(meta))

    def start(self, children):
        return attach_comments(children)

    @v_args(meta=True)
    def word(self, meta, children):
        token = children[0]
        try:
            value = read_word(str(token))
        except ValueError as e:
            raise ReadError(str(e), str(token), self._range(meta)) from e
        return self._annotate(value, meta)

    @v_args(meta=True)
    def string(self, meta, children):
        token = children[0]
        try:
            value = unescape(str(token)[1:-1])
        except ValueError as e:
            raise ReadError(str(e), str(token), self._range(meta)) from e
        return self._annotate(value, meta)

    @v_args(meta=True)
    def list(self, meta, children):
        items, tail = _split_dotted(attach_comments(children))
        out = tail
        for item in reversed(items):
            out = Pair(item, out)
        return self._annotate(out, meta)

    @v_args(meta=True)
    def cons(self, meta, children):
        items, tail = _split_dotted(attach_comments(children))
        out = tail
        for item in reversed(items):
            out = Cons(item, out)
        return self._annotate(out, meta)

    @v_args(meta=True)
    def bind(self, meta, children):
        return self._annotate(Bind(attach_comments(children)), meta)

    @v_args(meta=True)
    def meta(self, meta, children):
        meta_form, form = children
        try:
            items = _desugar_meta(meta_form)
        except ValueError as e:
            raise ReadError(str(e), None, self._range(meta)) from e
        if isinstance(form.meta, Bind):
            items = list(form.meta.items) + items
        form.meta = Bind(items)
        return form


def _strip_shebang(text: str) -> str:
    if text.startswith("#!"):
        newline = text.find("\n")
        return "" if newline == -1 else text[newline:]
    return text


def read_all(text: str, filename: str = "<source>") -> List[Annotated]:
    """Reads every top-level form in text."""
    source = _strip_shebang(text)
    try:
        tree = _get_parser().parse(source)
    except UnexpectedInput as e:
        raise _read_error(e, source, filename) from e
    try:
        return BassTransformer(filename).transform(tree)
    except VisitError as e:
        if isinstance(e.orig_exc, ReadError):
            raise e.orig_exc from None
        raise


def _read_error(e: UnexpectedInput, source: str, filename: str) -> ReadError:
    match e:
        case UnexpectedEOF():
            line = source.count("\n") + 1
            col = len(source) - source.rfind("\n")
            err = ReadError("unexpected end of input", None, Range(filename, line, col, line, col))
            err.incomplete = True
            return err
        case UnexpectedToken() if e.token.type == "$END":
            line = source.count("\n") + 1
            col = len(source) - source.rfind("\n")
            err = ReadError("unexpected end of input", None, Range(filename, line, col, line, col))
            err.incomplete = True
            return err
        case UnexpectedToken():
            text = str(e.token)
            return ReadError("unexpected token", text, Range(filename, e.line, e.column, e.line, e.column + len(text)))
        case UnexpectedCharacters():
            text = source[e.pos_in_stream:e.pos_in_stream + 1]
            err = ReadError("unexpected character", text, Range(filename, e.line, e.column, e.line, e.column + 1))
            # an unterminated string can still be completed
            err.incomplete = text == '"'
            return err
    return ReadError(str(e), None, Range(filename, e.line, e.column, e.line, e.column))


class Reader:
    """Reads forms one at a time; raises EndOfSource once the text is exhausted."""

    def __init__(self, text: str, filename: str = "<source>"):
        self.text = text
        self.filename = filename
        self._forms: Optional[List[Annotated]] = None
        self._offset = 0

    def next(self) -> Annotated:
        if self._forms is None:
            self._forms = read_all(self.text, self.filename)
        if self._offset >= len(self._forms):
            raise EndOfSource()
        form = self._forms[self._offset]
        self._offset += 1
        return form

    def __iter__(self):
        while True:
            try:
                yield self.next()
            except EndOfSource:
                return
