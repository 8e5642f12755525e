import struct
import threading
from pathlib import Path

import pytest

import element_ldb
from element_ldb import RawEntry

NS = element_ldb.ELEMENT_NAMESPACE


def test_missing_path_is_not_found(tmp_path: Path):
    with pytest.raises(element_ldb.NotFound) as ei:
        element_ldb.open_store(tmp_path / "nope")
    assert ei.value.path == tmp_path / "nope"


def test_directory_without_engine_files_is_not_found(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")
    with pytest.raises(element_ldb.NotFound) as ei:
        element_ldb.open_store(tmp_path)
    assert "no LevelDB files" in ei.value.reason


def test_file_instead_of_directory_is_not_found(tmp_path: Path):
    f = tmp_path / "000003.log"
    f.write_bytes(b"")
    with pytest.raises(element_ldb.NotFound):
        element_ldb.open_store(f)


def test_current_pointing_at_missing_manifest_is_corrupt(fake_store):
    (fake_store.path / "MANIFEST-000001").unlink()
    with pytest.raises(element_ldb.CorruptStore) as ei:
        element_ldb.open_store(fake_store.path)
    assert "MANIFEST-000001" in ei.value.reason


def test_garbage_current_is_corrupt(fake_store):
    (fake_store.path / "CURRENT").write_text("garbage\n", encoding="ascii")
    with pytest.raises(element_ldb.CorruptStore):
        element_ldb.open_store(fake_store.path)


def test_engine_open_failure_is_corrupt(fake_store):
    fake_store.open_error = struct.error("unpack requires a buffer of 8 bytes")
    with pytest.raises(element_ldb.CorruptStore) as ei:
        element_ldb.open_store(fake_store.path)
    assert isinstance(ei.value.__cause__, struct.error)


def test_engine_failure_mid_read_yields_nothing(fake_store):
    fake_store.put(NS + b"\x01mx_user_id", b"\x01@a:x.org")
    fake_store.fail_after(ValueError("bad block checksum"))
    store = element_ldb.open_store(fake_store.path)
    seen = []
    with pytest.raises(element_ldb.CorruptStore):
        for entry in store.scan():
            seen.append(entry)
    assert seen == []


def test_scan_returns_live_view_in_key_order(fake_store):
    fake_store.put(b"_ns\x01b", b"\x01old")
    fake_store.put(b"_ns\x01a", b"\x01A")
    fake_store.put(b"_ns\x01b", b"\x01new")
    fake_store.put(b"_ns\x01gone", b"\x01x")
    fake_store.delete(b"_ns\x01gone")
    with element_ldb.open_store(fake_store.path, namespace=b"_ns") as store:
        entries = list(store.scan())
    assert entries == [RawEntry(b"_ns\x01a", b"\x01A"), RawEntry(b"_ns\x01b", b"\x01new")]


def test_highest_sequence_wins_not_file_order(fake_store):
    fake_store.put(b"k", b"\x01newer", seq=10)
    fake_store.put(b"k", b"\x01older", seq=4)
    with element_ldb.open_store(fake_store.path) as store:
        assert list(store.scan()) == [RawEntry(b"k", b"\x01newer")]


def test_rewrite_after_delete_is_live(fake_store):
    fake_store.put(b"k", b"\x01one")
    fake_store.delete(b"k")
    fake_store.put(b"k", b"\x01two")
    with element_ldb.open_store(fake_store.path) as store:
        assert list(store.scan()) == [RawEntry(b"k", b"\x01two")]


def test_second_scan_starts_from_the_beginning(fake_store):
    fake_store.put(b"a", b"\x011")
    fake_store.put(b"b", b"\x012")
    with element_ldb.open_store(fake_store.path) as store:
        it = store.scan()
        next(it)
        assert [e.key for e in store.scan()] == [b"a", b"b"]


def test_get_normalizes_value(fake_store):
    fake_store.put(NS + b"\x01mx_user_id", b"\x01@a:x.org\x07")
    fake_store.put(NS + b"\x00" + "mx_device_id".encode("utf-16-le"), b"\x00" + "DEV".encode("utf-16-le"))
    fake_store.put(NS + b"\x01mx_blob", b"\x01\xff\xfe")
    with element_ldb.open_store(fake_store.path) as store:
        assert store.get("mx_user_id") == element_ldb.NormalizedValue("@a:x.org")
        assert store.get("mx_device_id") == element_ldb.NormalizedValue("DEV")
        assert store.get("mx_blob") == element_ldb.NormalizedValue("01fffe", was_binary=True)
        assert store.get("mx_missing") is None


def test_get_ignores_deleted_keys(fake_store):
    fake_store.put(NS + b"\x01mx_user_id", b"\x01@a:x.org")
    fake_store.delete(NS + b"\x01mx_user_id")
    with element_ldb.open_store(fake_store.path) as store:
        assert store.get("mx_user_id") is None


def test_close_releases_engine_and_blocks_further_use(fake_store):
    store = element_ldb.open_store(fake_store.path)
    store.close()
    store.close()
    assert fake_store.closed == 1
    with pytest.raises(RuntimeError):
        store.get("mx_user_id")


def test_lookups_and_scans_from_threads_agree(fake_store):
    for i in range(50):
        fake_store.put(b"_ns\x01k%02d" % i, b"\x01v%d" % i)
    store = element_ldb.open_store(fake_store.path, namespace=b"_ns")
    results = []

    def worker():
        results.append((len(list(store.scan())), store.get("k07")))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    store.close()
    assert results == [(50, element_ldb.NormalizedValue("v7"))] * 8


def test_store_files_are_untouched(fake_store):
    before = {p.name: p.read_bytes() for p in fake_store.path.iterdir()}
    fake_store.put(b"k", b"\x01v")
    with element_ldb.open_store(fake_store.path) as store:
        list(store.scan())
        store.get("k")
    after = {p.name: p.read_bytes() for p in fake_store.path.iterdir()}
    assert after == before
