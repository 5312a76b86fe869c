import re

import pytest

from bass.bass_datatypes import (
    Symbol, Keyword, Empty, Pair, Scope, Wrapped, Operative, Secret, DirPath,
    FilePath, CommandPath, FSPath, Sink, ListSink, Source, StaticSource,
    make_list, to_list, unannotate,
)
from bass.bass_errors import BassError
from bass.bass_runtime import ScriptRunner, builtin_name


async def evaluate(source, runner=None):
    runner = runner or ScriptRunner()
    res = await runner.handle_script(source)
    assert res.status == "success", res.error_message
    return unannotate(res.value)


async def fails(source, runner=None):
    runner = runner or ScriptRunner()
    res = await runner.handle_script(source)
    assert res.status == "error", f"expected an error, got {res.value!r}"
    return res


def test_builtin_names():
    assert builtin_name("_string_to_symbol") == "string->symbol"
    assert builtin_name("_null_q") == "null?"
    assert builtin_name("_get_current_scope") == "get-current-scope"
    assert builtin_name("_list_star") == "list*"
    assert builtin_name("_lte") == "<="


@pytest.mark.asyncio
@pytest.mark.parametrize("source,expected", [
    ("(+ 1 2 3)", 6),
    ("(+)", 0),
    ("(- 5)", -5),
    ("(- 10 3 2)", 5),
    ("(*)", 1),
    ("(* 2 3 4)", 24),
    ("(quot 7 2)", 3),
    ("(quot -7 2)", -3),
    ("(max 1 3 2)", 3),
    ("(min 4 2 8)", 2),
])
async def test_arithmetic(source, expected):
    assert await evaluate(source) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("source,expected", [
    ("(< 1 2 3)", True),
    ("(< 1 3 2)", False),
    ("(<= 1 1 2)", True),
    ("(> 3 2 1)", True),
    ("(>= 3 3 4)", False),
    ('(< "a" "b")', True),
    ("(= 1 1 1)", True),
    ("(= 1 2)", False),
    ("(= null false)", False),
    ("(= [] [])", True),
    ("(= {:a 1} {:a 1})", True),
    ("(= {:a 1} {:a 2})", False),
    ("(= {:a 1} {:a 1 :b 2})", False),
    ('(= "a" (quote a))', False),
])
async def test_comparisons(source, expected):
    assert await evaluate(source) is expected


@pytest.mark.asyncio
async def test_quot_by_zero_fails():
    res = await fails("(quot 1 0)")
    assert "division by zero" in res.error_message


@pytest.mark.asyncio
@pytest.mark.parametrize("source,expected", [
    ("(null? null)", True),
    ("(null? false)", False),
    ("(ignore? _)", True),
    ("(boolean? false)", True),
    ("(number? 1)", True),
    ("(number? true)", False),
    ('(string? "")', True),
    ("(symbol? (quote x))", True),
    ("(keyword? :x)", True),
    ("(scope? {})", True),
    ("(empty? null)", True),
    ("(empty? [])", True),
    ('(empty? "")', True),
    ("(empty? {})", True),
    ("(empty? [1])", False),
    ("(pair? [1])", True),
    ("(list? [1 2])", True),
    ("(list? (cons 1 2))", False),
    ("(combiner? fn)", True),
    ("(applicative? list)", True),
    ("(operative? fn)", True),
    ("(operative? if)", True),
    ("(applicative? if)", False),
    ("(path? ./foo)", True),
    ("(path? .git)", True),
    ("(thunk? (.echo))", True),
    ("(sink? *stdout*)", True),
    ("(source? *stdin*)", True),
])
async def test_predicates(source, expected):
    assert await evaluate(source) is expected


@pytest.mark.asyncio
async def test_op_receives_operands_and_scope():
    assert await evaluate("((op [x] _ x) foo)") == Symbol("foo")
    scope = await evaluate("((op [] e e))")
    assert isinstance(scope, Scope)
    assert await evaluate("(def x 42) ((op [] e (eval (quote x) e)))") == 42


@pytest.mark.asyncio
async def test_def_returns_formals_and_destructures():
    runner = ScriptRunner()
    assert await evaluate("(def a 1)", runner) == Symbol("a")
    assert await evaluate("a", runner) == 1

    res = await evaluate("(def (a . bs) [1 2 3]) [a bs]", runner)
    assert to_list(res)[0] == 1
    assert to_list(to_list(res)[1]) == [2, 3]

    res = await evaluate("(def {:a x :b (y 2)} {:a 1}) [x y]", runner)
    assert to_list(res) == [1, 2]

    res = await evaluate("(def [first-one _ & others] [1 2 3 4]) [first-one others]", runner)
    assert to_list(res)[0] == 1
    assert to_list(to_list(res)[1]) == [3, 4]


@pytest.mark.asyncio
async def test_def_mismatch_fails():
    res = await fails("(def [a b] [1])")
    assert "bind" in res.error_message


@pytest.mark.asyncio
async def test_bind_reports_success():
    runner = ScriptRunner()
    assert await evaluate("(bind (get-current-scope) (quote [a b]) [1 2])", runner) is True
    assert await evaluate("b", runner) == 2
    assert await evaluate("(bind (get-current-scope) (quote [a b]) [1])", runner) is False


@pytest.mark.asyncio
async def test_if_branches():
    assert await evaluate("(if true 1 2)") == 1
    assert await evaluate("(if false 1 2)") == 2
    assert await evaluate("(if null 1 2)") == 2
    assert await evaluate("(if [] 1 2)") == 1
    assert await evaluate('(if "" 1 2)') == 1
    assert await evaluate("(if false 1)") is None


@pytest.mark.asyncio
async def test_do_cons_quote_wrap_unwrap():
    assert await evaluate("(do 1 2 3)") == 3
    assert await evaluate("(do)") is None
    assert await evaluate("(cons 1 2)") == Pair(1, 2)
    assert await evaluate("(quote (a b))") == make_list(Symbol("a"), Symbol("b"))
    assert await evaluate("((wrap (op [x] _ x)) (+ 1 2))") == 3
    assert to_list(await evaluate("((unwrap list) a b)")) == [Symbol("a"), Symbol("b")]
    assert isinstance(await evaluate("(unwrap list)"), Operative)
    assert isinstance(await evaluate("(wrap (op [] _))"), Wrapped)


@pytest.mark.asyncio
async def test_eval_and_apply():
    assert await evaluate("(eval (quote (+ 1 2)) (get-current-scope))") == 3
    assert await evaluate("(eval (quote a) {:a 42})") == 42
    res = await evaluate("(apply (fn xs xs) [(quote foo) 42 {:a 1}])")
    items = to_list(res)
    assert items[0] == Symbol("foo")
    assert items[1] == 42
    assert items[2].get(Symbol("a")) == 1
    assert await evaluate("(apply + [1 2 3])") == 6


@pytest.mark.asyncio
async def test_fn_defn_defop():
    assert to_list(await evaluate("((fn [x] (def local (* x 2)) [local (* local 2)]) 21)")) == [42, 84]
    assert await evaluate("(defn foo [x] x)") == Symbol("foo")
    assert to_list(await evaluate("(defn foo [x] (def local (* x 2)) [local (* local 2)]) (foo 21)")) == [42, 84]
    assert await evaluate("(defop def2 [x y] e (eval [def x y] e) y) (def2 foo 42)") == 42


@pytest.mark.asyncio
async def test_let_cond_when_unless():
    assert to_list(await evaluate("(let [a 21 b (* a 2)] [a b])")) == [21, 42]
    assert await evaluate("(cond true 1 unevaluated unevaluated)") == 1
    assert await evaluate("(cond false unevaluated true 2 unevaluated unevaluated)") == 2
    assert await evaluate("(cond false unevaluated false unevaluated :else 3)") == 3
    assert await evaluate("(cond false unevaluated)") is None
    assert await evaluate("(when true 1 2)") == 2
    assert await evaluate("(when false unevaluated)") is None
    assert await evaluate("(unless false 1)") == 1
    assert await evaluate("(unless true unevaluated)") is None


@pytest.mark.asyncio
async def test_case():
    assert await evaluate("(case 1 1 :one 2 :two)") == Keyword("one")
    assert await evaluate("(case 2 1 :one 2 :two)") == Keyword("two")
    assert await evaluate("(case 3 1 :one _ :other)") == Keyword("other")
    assert to_list(await evaluate("(case [1 2] [a b] [b a])")) == [2, 1]
    res = await fails("(case 3 1 :one 2 :two)")
    assert "no matching case branch" in res.error_message


@pytest.mark.asyncio
async def test_bool_forms():
    assert await evaluate("(not false)") is True
    assert await evaluate("(not 1)") is False
    assert await evaluate("(and)") is True
    assert await evaluate("(and true 2)") == 2
    assert await evaluate("(and false unevaluated)") is False
    assert await evaluate("(and null unevaluated)") is None
    assert await evaluate("(or)") is False
    assert await evaluate("(or false 2 unevaluated)") == 2
    assert await evaluate("(or false null)") is None


@pytest.mark.asyncio
async def test_provide_exposes_only_named_bindings():
    runner = ScriptRunner()
    await evaluate("""
    (provide [inc]
      (defn helper [x] (+ x 1))
      (defn inc [x] (helper x)))
    """, runner)
    assert await evaluate("(inc 41)", runner) == 42
    res = await runner.handle_script("(helper 1)")
    assert res.status == "error"
    assert "unbound symbol: helper" in res.error_message


@pytest.mark.asyncio
async def test_list_helpers():
    assert to_list(await evaluate("(list 1 2 3)")) == [1, 2, 3]
    assert await evaluate("(first [1 2])") == 1
    assert to_list(await evaluate("(rest [1 2 3])")) == [2, 3]
    assert await evaluate("(second [1 2 3])") == 2
    assert await evaluate("(third [1 2 3])") == 3
    assert await evaluate("(length [1 2 3])") == 3
    assert await evaluate('(length "four")') == 4
    assert await evaluate("(list* 1 2 [3 4])") == make_list(1, 2, 3, 4)
    assert await evaluate("(list* 1 2)") == Pair(1, 2)
    assert to_list(await evaluate("(append [1] [] [2 3])")) == [1, 2, 3]
    assert to_list(await evaluate("(conj [1] 2 3)")) == [1, 2, 3]
    assert to_list(await evaluate("(map (fn [x] (* x 2)) [1 2 3])")) == [2, 4, 6]
    assert to_list(await evaluate("(filter number? [1 :a 2 null])")) == [1, 2]
    assert await evaluate("(reduce + 0 [1 2 3])") == 6
    assert to_list(await evaluate("(foldr cons [] [1 2 3])")) == [1, 2, 3]
    assert to_list(await evaluate("(foldl (fn [acc x] (cons x acc)) [] [1 2 3])")) == [3, 2, 1]


@pytest.mark.asyncio
async def test_first_of_empty_fails():
    res = await fails("(first [])")
    assert "first" in res.error_message


@pytest.mark.asyncio
async def test_each_runs_for_side_effects():
    runner = ScriptRunner()
    res = await runner.handle_script('(each [1 2] (fn [x] (log x)))')
    assert res.status == "success"
    messages = [e["message"] for e in res.side_effects if e["topics"] == ["stderr"]]
    assert messages == ["1", "2"]


@pytest.mark.asyncio
async def test_scope_helpers():
    runner = ScriptRunner()
    assert await evaluate("(:a {:a 1})", runner) == 1
    assert await evaluate("(:b {:a 1} 2)", runner) == 2
    assert await evaluate("(:b {:a 1})", runner) is None

    res = await evaluate("(assoc {:a 1} :b 2 :a 3)", runner)
    assert res.get(Symbol("a")) == 3
    assert res.get(Symbol("b")) == 2

    # assoc copies; the original is untouched
    assert await evaluate("(def orig {:a 1}) (assoc orig :a 2) (:a orig)", runner) == 1

    assert to_list(await evaluate("(scope->list {:a 1 :b 2})", runner)) == [Symbol("a"), 1, Symbol("b"), 2]
    res = await evaluate("(list->scope [:a 1 :b 2])", runner)
    assert res.get(Symbol("b")) == 2

    res = await evaluate("(reduce-kv (fn [acc k v] (+ acc v)) 0 {:a 1 :b 2})", runner)
    assert res == 3

    merged = await evaluate("{:c 3 {:a 1} {:b 2}}", runner)
    assert merged.get(Symbol("a")) == 1
    assert merged.get(Symbol("b")) == 2
    assert merged.get(Symbol("c")) == 3


@pytest.mark.asyncio
async def test_make_scope_parents():
    runner = ScriptRunner()
    assert await evaluate("(:a (make-scope {:a 1} {:a 2 :b 3}))", runner) == 1
    assert await evaluate("(:b (make-scope {:a 1} {:a 2 :b 3}))", runner) == 3
    assert await evaluate("(eval (quote +) (make-scope (get-current-scope)))", runner) is not None


def test_scope_parents_cannot_cycle():
    a = Scope()
    b = Scope(a)
    c = Scope(b)
    with pytest.raises(BassError, match="cyclic scope"):
        a.add_parent(c)
    with pytest.raises(BassError, match="cyclic scope"):
        a.add_parent(a)
    assert a.parents == []
    # diamonds are fine
    assert Scope(b, c).parents == [b, c]


@pytest.mark.asyncio
async def test_strings_and_conversions():
    assert await evaluate('(str "a" 1 :b "c")') == "a1:bc"
    assert await evaluate('(substring "hello" 1)') == "ello"
    assert await evaluate('(substring "hello" 1 3)') == "el"
    assert await evaluate('(trim "  hi \\n")') == "hi"
    assert await evaluate("(symbol->string (quote $foo-bar))") == "$foo-bar"
    assert await evaluate('(string->symbol "$foo-bar")') == Symbol("$foo-bar")
    assert await evaluate('(string->keyword "foo")') == Keyword("foo")
    assert await evaluate("(keyword->string :foo)") == "foo"
    assert await evaluate('(string->cmd-path "foo")') == CommandPath("foo")
    assert await evaluate('(string->cmd-path "./file")') == FilePath("./file")
    assert await evaluate('(string->fs-path "dir/")') == DirPath("dir")
    assert await evaluate('(string->fs-path "dir/file")') == FilePath("dir/file")
    assert await evaluate('(string->dir "a/b")') == DirPath("a/b")
    assert await evaluate("(subpath ./a/ ./b)") == FilePath("./a/b")
    assert await evaluate("(path-name ./a/b.txt)") == "b.txt"
    assert await evaluate("(path-name .git)") == "git"


@pytest.mark.asyncio
async def test_json_encoding():
    assert await evaluate("(json {:foo-bar [1 true null]})") == '{"foo_bar":[1,true,null]}'
    res = await evaluate('(json->value "{\\"a_b\\": {\\"file\\": \\"x\\"}}")')
    assert res.get(Symbol("a-b")) == FilePath("x")
    res = await fails("(json (op [] _))")
    assert "EncodeError" in res.error_message


@pytest.mark.asyncio
async def test_meta_and_docs():
    runner = ScriptRunner()
    assert await evaluate("(meta 1)", runner) is None
    res = await evaluate("(meta (with-meta 1 {:a 1}))", runner)
    assert res.get(Symbol("a")) == 1
    res = await evaluate("(meta (with-meta (with-meta 1 {:a 1}) {:b 2}))", runner)
    assert res.get(Symbol("a")) == 1
    assert res.get(Symbol("b")) == 2
    assert await evaluate("(with-meta 1 {:a 1})", runner) == 1

    res = await runner.handle_script("""
; adds one
(defn inc [x] (+ x 1))
(doc inc)
""")
    assert res.status == "success", res.error_message
    messages = [e["message"] for e in res.side_effects]
    assert messages == ["inc (applicative)\nadds one"]

    res = await runner.handle_script("(doc)")
    assert res.side_effects[0]["message"] == "adds one"
    assert to_list(await evaluate("(commentary (get-current-scope))", runner)) == ["adds one"]


@pytest.mark.asyncio
async def test_ground_bindings_have_docs():
    runner = ScriptRunner()
    res = await runner.handle_script("(doc cons fn)")
    assert res.status == "success", res.error_message
    assert res.side_effects[0]["message"].startswith("cons (applicative)\nConstructs a pair")
    assert res.side_effects[1]["message"].startswith("fn (operative)\nconstructs an applicative")


@pytest.mark.asyncio
async def test_log_logf_dump():
    runner = ScriptRunner()
    res = await runner.handle_script('(log "hello") (log {:a 1}) (logf "%s is %d" "x" 42) (dump [1 {:a "b"}])')
    assert res.status == "success", res.error_message
    messages = [e["message"] for e in res.side_effects]
    assert messages[0] == "hello"
    assert messages[1] == "{:a 1}"
    assert messages[2] == "x is 42"
    assert '"a": "b"' in messages[3]
    assert to_list(unannotate(res.value))[0] == 1


@pytest.mark.asyncio
async def test_now_truncates():
    value = await evaluate("(now 60)")
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:00Z", value)
    value = await evaluate("(now 3600)")
    assert value.endswith(":00:00Z")


@pytest.mark.asyncio
async def test_error_and_errorf():
    res = await fails('(error "oh no")')
    assert "oh no" in res.error_message
    res = await fails('(error "oh no" :code 42)')
    assert "oh no" in res.error_message
    assert "42" in res.error_message
    res = await fails('(errorf "bad %s: %d" "thing" 3)')
    assert "bad thing: 3" in res.error_message


@pytest.mark.asyncio
async def test_mkfs_mask_cache_dir():
    fs = await evaluate('(mkfs ./a.txt "hello" ./dir/b.txt "world")')
    assert isinstance(fs, FSPath)
    assert fs.fs.files
    secret = await evaluate('(mask "hunter2" :password)')
    assert isinstance(secret, Secret)
    assert secret.reveal() == "hunter2"
    assert "hunter2" not in await evaluate('(json (mask "hunter2" :password))')
    cache = await evaluate('(cache-dir "go-mod")')
    assert cache.id == "go-mod"


@pytest.mark.asyncio
async def test_streams():
    sink = ListSink()
    runner = ScriptRunner()
    runner.stdout = Sink(sink)
    runner.stdin = Source(StaticSource([1, 2, 3], name="stdin"))
    await runner._initialize()

    assert await evaluate("(emit 42 *stdout*)", runner) is None
    assert sink.values == [42]

    assert await evaluate("(next *stdin*)", runner) == 1
    assert await evaluate("(last *stdin*)", runner) == 3
    assert await evaluate("(next *stdin* :end)", runner) == Keyword("end")
    res = await runner.handle_script("(next *stdin*)")
    assert res.status == "error"
    assert "end of source" in res.error_message.lower()

    assert to_list(await evaluate("(collect (stream 1 2 3))", runner)) == [1, 2, 3]
    assert to_list(await evaluate("(collect (list->source [4 5]))", runner)) == [4, 5]
    assert await evaluate("(collect (stream))", runner) is Empty
    assert await evaluate("(last (stream) :none)", runner) == Keyword("none")
    res = await evaluate("(let [s (stream 1 2 3)] [(next s) (next s) (next s) (next s :end)])", runner)
    assert to_list(res) == [1, 2, 3, Keyword("end")]


@pytest.mark.asyncio
async def test_unbound_symbol_suggests_names():
    res = await fails("(def food 1) fod")
    assert "unbound symbol: fod" in res.error_message
    assert "did you mean" in res.error_message
    assert "food" in res.error_message


@pytest.mark.asyncio
async def test_arity_and_decode_errors():
    res = await fails("(quot 1)")
    assert "quot arity" in res.error_message
    res = await fails('(+ 1 "a")')
    assert "DecodeError" in res.error_message


@pytest.mark.asyncio
async def test_ground_is_frozen():
    runner = ScriptRunner()
    await runner._initialize()
    ground = runner.module.parents[0].parents[0]
    assert ground.name == "ground"
    with pytest.raises(RuntimeError):
        ground.set("x", 1)
    # user definitions shadow ground without touching it
    assert await evaluate("(def + -) (+ 3 1)", runner) == 2
    assert await evaluate("(+ 3 1)") == 4
