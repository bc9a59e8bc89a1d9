import os
from unittest import mock

import pytest

from distlab.apps import (
    JOBCOUNT_PREFIX,
    MapReduceApp,
    crash_map,
    crash_reduce,
    early_exit_map,
    early_exit_reduce,
    indexer_map,
    indexer_reduce,
    jobcount_map,
    jobcount_reduce,
    load_app,
    mtiming_map,
    mtiming_reduce,
    nocrash_map,
    nocrash_reduce,
    nparallel,
    rtiming_map,
    rtiming_reduce,
    wc_map,
    wc_reduce,
)
from distlab.mrprotocol import KeyValue


def test_wc_map_splits_on_non_letters():
    pairs = wc_map("ignored.txt", "Hello, world! hello")
    assert [p.key for p in pairs] == ["Hello", "world", "hello"]
    assert all(p.value == "1" for p in pairs)


def test_wc_map_digits_separate_words():
    assert [p.key for p in wc_map("f", "abc123def_ghi")] == ["abc", "def", "ghi"]


def test_wc_map_unicode_letters():
    assert [p.key for p in wc_map("f", "café naïve")] == ["café", "naïve"]


def test_wc_map_empty():
    assert wc_map("f", " 123 ...") == []


@pytest.mark.parametrize("n", [0, 1, 7, 42])
def test_wc_reduce_counts_values(n):
    assert int(wc_reduce("w", ["1"] * n)) == n


def test_indexer_map_distinct_words():
    pairs = indexer_map("doc.txt", "a b a c b")
    assert sorted(p.key for p in pairs) == ["a", "b", "c"]
    assert {p.value for p in pairs} == {"doc.txt"}


def test_indexer_reduce_sorts_documents():
    assert indexer_reduce("w", ["z.txt", "a.txt"]) == "2 a.txt,z.txt"


def test_nocrash_map_summary():
    filename, contents = "in.txt", "some contents"
    pairs = nocrash_map(filename, contents)
    assert [p.key for p in pairs] == ["a", "b", "c", "d"]
    values = {p.key: p.value for p in pairs}
    assert values["a"] == filename
    assert int(values["b"]) == len(filename)
    assert int(values["c"]) == len(contents)
    assert values["d"] == "xyzzy"


def test_nocrash_reduce_sorted():
    values = ["b", "a", "c"]
    assert nocrash_reduce("k", values).split(" ") == sorted(values)
    assert values == ["b", "a", "c"]


def test_crash_map_without_crash():
    with mock.patch("secrets.randbelow", return_value=999), mock.patch("time.sleep") as sleep:
        assert crash_map("in.txt", "abc") == nocrash_map("in.txt", "abc")
    sleep.assert_not_called()


def test_crash_map_exits():
    with mock.patch("secrets.randbelow", return_value=0):
        with pytest.raises(SystemExit) as info:
            crash_map("in.txt", "abc")
    assert info.value.code == 1


def test_crash_reduce_delays():
    with mock.patch("secrets.randbelow", side_effect=[500, 2500]), mock.patch(
        "time.sleep"
    ) as sleep:
        assert crash_reduce("k", ["y", "x"]) == nocrash_reduce("k", ["y", "x"])
    sleep.assert_called_once()


def test_early_exit_map():
    assert early_exit_map("pg-tom.txt", "x") == [KeyValue("pg-tom.txt", "1")]


def test_early_exit_reduce_sleeps_for_some_keys():
    with mock.patch("time.sleep") as sleep:
        assert int(early_exit_reduce("pg-sherlock.txt", ["1", "1"])) == 2 * 1
        sleep.assert_called_once_with(3)
        sleep.reset_mock()
        assert int(early_exit_reduce("pg-other.txt", ["1"])) == len(["1"])
        sleep.assert_not_called()


def test_jobcount_counts_map_invocations(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "unrelated").write_text("x")
    with mock.patch("time.sleep"):
        assert jobcount_map("f", "c") == [KeyValue("a", "x")]
        jobcount_map("g", "c")
    markers = [n for n in os.listdir(tmp_path) if n.startswith(JOBCOUNT_PREFIX)]
    assert len(markers) == 2
    assert int(jobcount_reduce("a", ["x", "x"])) == len(markers)


def test_mtiming_map(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    pid = os.getpid()
    with mock.patch("time.sleep"):
        pairs = mtiming_map("f", "c")
    values = {p.key: p.value for p in pairs}
    assert set(values) == {f"times-{pid}", f"parallel-{pid}"}
    assert int(values[f"parallel-{pid}"]) >= 1
    assert float(values[f"times-{pid}"]) > 0


def test_mtiming_reduce_sorted():
    values = ["3.5", "1.5", "2.5"]
    assert mtiming_reduce("k", values).split(" ") == sorted(values)


def test_rtiming_map_keys():
    pairs = rtiming_map("f", "c")
    assert [p.key for p in pairs] == list("abcdefghij")
    assert {p.value for p in pairs} == {"1"}


def test_rtiming_reduce(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with mock.patch("time.sleep"):
        assert int(rtiming_reduce("a", ["1"])) >= 1
    assert os.listdir(tmp_path) == []


@pytest.mark.parametrize("name", ["wc", "wc.so", "../mrapps/wc.so"])
def test_load_app_by_name(name):
    app = load_app(name)
    assert isinstance(app, MapReduceApp)
    assert app.map is wc_map
    assert app.reduce is wc_reduce


def test_load_app_indexer():
    assert load_app("indexer.so").reduce is indexer_reduce


def test_load_app_unknown():
    with pytest.raises(LookupError):
        load_app("nope.so")