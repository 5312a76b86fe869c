import pytest

from bass.bass_datatypes import (
    Symbol, Keyword, Ignore, Empty, Pair, Cons, Bind, Annotated, DirPath,
    FilePath, CommandPath, ExtendPath, unannotate, list_items,
)
from bass.bass_errors import EndOfSource, ReadError
from bass.bass_reader import Reader, read_all, read_word


def read_one(text):
    forms = read_all(text, "test.bass")
    assert len(forms) == 1
    return forms[0]


def plain(value):
    """Strips annotations recursively so forms compare structurally."""
    value = unannotate(value)
    if isinstance(value, Pair):
        return Pair(plain(value.a), plain(value.d))
    if isinstance(value, Cons):
        return Cons(plain(value.a), plain(value.d))
    return value


@pytest.mark.parametrize("text,expected", [
    ("42", 42),
    ("-7", -7),
    ("0x1f", 31),
    ("null", None),
    ("true", True),
    ("false", False),
    ("_", Ignore),
    ("foo", Symbol("foo")),
    (":foo", Keyword("foo")),
    ('"hi\\n\\"there\\""', 'hi\n"there"'),
])
def test_atoms(text, expected):
    value = unannotate(read_one(text))
    assert value == expected
    assert type(value) is type(expected)


def test_bad_number_is_a_read_error():
    with pytest.raises(ReadError) as exc:
        read_all("12abc")
    assert "invalid number format" in str(exc.value)


def test_illegal_escape():
    with pytest.raises(ReadError):
        read_all('"\\q"')


def test_keyword_access_desugars():
    assert read_word("a:b") == Pair(Keyword("b"), Pair(Symbol("a"), Empty))
    assert read_word("a:b:c") == Pair(Keyword("c"), Pair(Pair(Keyword("b"), Pair(Symbol("a"), Empty)), Empty))
    assert read_word(":a:b") == Pair(Keyword("b"), Pair(Keyword("a"), Empty))


def test_paths():
    assert read_word(".git") == CommandPath("git")
    assert read_word("./") == DirPath(".")
    assert read_word("./foo") == ExtendPath(DirPath("."), FilePath("foo"))
    assert read_word("./foo/") == ExtendPath(DirPath("."), DirPath("foo"))
    assert read_word("/bin/sh") == ExtendPath(ExtendPath(DirPath(""), DirPath("bin")), FilePath("sh"))
    sub = read_word("sym/x")
    assert isinstance(sub, ExtendPath)
    assert sub.parent == Symbol("sym")
    assert sub.child == FilePath("x")


def test_lists_and_dotted_tails():
    assert plain(read_one("(a b c)")) == Pair(Symbol("a"), Pair(Symbol("b"), Pair(Symbol("c"), Empty)))
    assert plain(read_one("[a b]")) == Cons(Symbol("a"), Cons(Symbol("b"), Empty))
    assert plain(read_one("(a & b)")) == Pair(Symbol("a"), Symbol("b"))
    assert plain(read_one("[a . b]")) == Cons(Symbol("a"), Symbol("b"))
    assert unannotate(read_one("()")) is Empty
    assert unannotate(read_one("[]")) is Empty


def test_scope_literal_reads_as_bind():
    value = unannotate(read_one("{:a 1 :b 2}"))
    assert isinstance(value, Bind)
    assert [unannotate(v) for v in value.items] == [Keyword("a"), 1, Keyword("b"), 2]


def test_ranges_are_recorded():
    form = read_one("\n  (foo bar)")
    assert isinstance(form, Annotated)
    assert form.range.file == "test.bass"
    assert form.range.start_line == 2
    assert form.range.start_col == 3
    items, _ = list_items(form.value)
    assert items[1].range.start_col == 8


def test_comments_attach_to_forms():
    forms = read_all("""
; first line
; continues
;
; second paragraph
(def a 1)

(def b 2) ; trailing

; dangling

(def c 3)
""")
    assert forms[0].comment == "first line continues\n\nsecond paragraph"
    assert forms[1].comment == "trailing"
    assert forms[2].comment == "dangling"


def test_meta_desugaring():
    form = read_one("^:private (def a 1)")
    assert [unannotate(v) for v in form.meta.items] == [Keyword("private"), True]

    form = read_one("^string (def a 1)")
    assert [unannotate(v) for v in form.meta.items] == [Keyword("tag"), Symbol("string")]

    form = read_one("^{:a 1} ^:b x")
    assert [unannotate(v) for v in form.meta.items] == [Keyword("b"), True, Keyword("a"), 1]


def test_shebang_keeps_line_numbers():
    forms = read_all("#!/usr/bin/env bass\n(foo)\n")
    assert len(forms) == 1
    assert forms[0].range.start_line == 2


def test_incomplete_input_is_flagged():
    with pytest.raises(ReadError) as exc:
        read_all("(def a")
    assert exc.value.incomplete

    with pytest.raises(ReadError) as exc:
        read_all('(log "unterminated')
    assert exc.value.incomplete

    with pytest.raises(ReadError) as exc:
        read_all("(a))")
    assert not exc.value.incomplete


def test_reader_next_ends_with_end_of_source():
    reader = Reader("1 2")
    assert unannotate(reader.next()) == 1
    assert unannotate(reader.next()) == 2
    with pytest.raises(EndOfSource):
        reader.next()
    assert [unannotate(f) for f in Reader("3 4")] == [3, 4]
