import enum
import sys
import types
from pathlib import Path

import pytest


class FakeKeyState(enum.Enum):
    Deleted = 0
    Live = 1
    Unknown = 2


class FakeRecord:
    def __init__(self, key, value, seq, state):
        self.key = key
        self.value = value
        self.seq = seq
        self.state = state

    @property
    def user_key(self):
        return self.key


class FakeStore:
    """A store directory on disk plus the records the fake engine will report for it."""

    def __init__(self, path: Path):
        self.path = path
        self.records = []
        self.open_error = None
        self.closed = 0
        self._seq = 0

    def put(self, key: bytes, value: bytes, *, seq=None):
        self._seq = seq if seq is not None else self._seq + 1
        self.records.append(FakeRecord(key, value, self._seq, FakeKeyState.Live))

    def delete(self, key: bytes, *, seq=None):
        self._seq = seq if seq is not None else self._seq + 1
        self.records.append(FakeRecord(key, b"", self._seq, FakeKeyState.Deleted))

    def fail_after(self, exc: BaseException):
        self.records.append(exc)


def make_store_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "CURRENT").write_text("MANIFEST-000001\n", encoding="ascii")
    (path / "MANIFEST-000001").write_bytes(b"")
    (path / "000003.log").write_bytes(b"")
    (path / "LOCK").write_bytes(b"")
    return path


@pytest.fixture
def fake_store(tmp_path, monkeypatch):
    store = FakeStore(make_store_dir(tmp_path / "leveldb"))

    class FakeRawLevelDb:
        def __init__(self, in_dir):
            if store.open_error is not None:
                raise store.open_error
            self.in_dir = Path(in_dir)

        def iterate_records_raw(self, *, reverse=False):
            for rec in store.records:
                if isinstance(rec, BaseException):
                    raise rec
                yield rec

        def close(self):
            store.closed += 1

    ldb_mod = types.ModuleType("ccl_chromium_reader.storage_formats.ccl_leveldb")
    ldb_mod.RawLevelDb = FakeRawLevelDb
    ldb_mod.KeyState = FakeKeyState
    formats_pkg = types.ModuleType("ccl_chromium_reader.storage_formats")
    formats_pkg.__path__ = []
    formats_pkg.ccl_leveldb = ldb_mod
    ccl_pkg = types.ModuleType("ccl_chromium_reader")
    ccl_pkg.__path__ = []
    ccl_pkg.storage_formats = formats_pkg
    monkeypatch.setitem(sys.modules, "ccl_chromium_reader", ccl_pkg)
    monkeypatch.setitem(sys.modules, "ccl_chromium_reader.storage_formats", formats_pkg)
    monkeypatch.setitem(sys.modules, "ccl_chromium_reader.storage_formats.ccl_leveldb", ldb_mod)
    return store
