#!/usr/bin/env python3
r"""
element_ldb.py

Read-only metadata extraction from Element Desktop's "Local Storage" LevelDB using ccl_chromium_reader.

Design goals (for forensic review):
- Never touch the source medium: the store is read from a working copy, through a pure-Python
  LevelDB reader that has no write path (no compaction, no log replay, no LOCK file).
- Keep everything: every live key/value pair lands in raw_entries, even when it also feeds a
  structured field.
- Deterministic output: metadata.json is byte-identical across runs over the same copy.
- Per-entry decode problems are logged to errors.jsonl and counted, never fatal.

Typical usage (Linux), after copying the store somewhere safe:
    python element_ldb.py --store ./leveldb --out ./element_export

Or let the script make the working copy from the installed client first:
    python element_ldb.py --from-installed --out ./element_export

Notes:
- The installed client should be closed while copying; LevelDB may hold unflushed writes in its log.
- Default --origin is vector://vector (Element Desktop).
"""

from __future__ import annotations

import argparse
import datetime as _dt
import csv
import hashlib
import json
import os
import platform
import re
import shutil
import sys
import tempfile
import threading
import traceback
import unicodedata
from collections import Counter
from dataclasses import asdict, dataclass, field, is_dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple, Union


ELEMENT_ORIGIN = "vector://vector"


# -----------------------------
# Errors
# -----------------------------

class ExtractionError(Exception):
    """Base class for everything this module raises on purpose."""


class NotFound(ExtractionError):
    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason}: {self.path}")


class CorruptStore(ExtractionError):
    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason}: {self.path}")


class MissingDependency(ExtractionError):
    def __init__(self, dependency: str):
        self.dependency = dependency
        super().__init__(f"required package not importable: {dependency}")


class DecodeAnomaly(ExtractionError):
    """A single key or value that could not be cleanly interpreted.

    Never raised by the scan; instances are handed to log_error_event() so the
    anomaly shows up in errors.jsonl with its key.
    """

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"{reason} (key={key!r})")


class SerializationError(ExtractionError):
    pass


# -----------------------------
# Small utilities
# -----------------------------

_FATAL_OUT_DIR: Optional[Path] = None
_FATAL_ERRORS_PATH: Optional[Path] = None

def utc_now_iso() -> str:
    tz = getattr(_dt, "UTC", _dt.timezone.utc)
    return _dt.datetime.now(tz).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def safe_mkdir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def write_text(path: Union[str, Path], text: str, *, encoding: str = "utf-8") -> None:
    """Write text to disk (creating parent dirs)."""
    p = Path(path)
    safe_mkdir(p.parent)
    with p.open("w", encoding=encoding, errors="replace", newline="\n") as f:
        f.write(text)


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def best_effort_text(b: Union[bytes, bytearray, memoryview]) -> str:
    """Render bytes for human readability. Never raises.

    Used for keys outside the application namespace (VERSION, META:..., other origins).
    Tries UTF-8, then UTF-16 when the buffer looks like it, then Latin-1; each candidate must
    be mostly printable. Otherwise the full buffer is rendered as 0x-prefixed hex so distinct
    keys stay distinct.
    """
    if isinstance(b, memoryview):
        b = b.tobytes()
    if isinstance(b, bytearray):
        b = bytes(b)
    if not isinstance(b, bytes):
        return str(b)
    if not b:
        return ""

    candidates = ["utf-8"]
    if should_decode_utf16le(b):
        candidates.append("utf-16-le")
    candidates.append("latin-1")
    for enc in candidates:
        try:
            t = b.decode(enc)
        except UnicodeDecodeError:
            continue
        printable = sum(1 for ch in t if ch.isprintable() or ch in "\t\n\r")
        if printable / max(1, len(t)) >= 0.85:
            return t

    return "0x" + b.hex()


def should_decode_utf16le(b: bytes) -> bool:
    """Heuristic: even length and at least half of the high bytes are NUL (ASCII-range UTF-16LE)."""
    if len(b) < 2 or len(b) % 2:
        return False
    high = b[1::2]
    return high.count(0) * 2 >= len(high)


def jsonable(x: Any) -> Any:
    """Convert objects (bytes, Paths, dataclasses, mappings) into JSON-serializable form."""
    if x is None or isinstance(x, (str, int, float, bool)):
        return x
    if isinstance(x, (bytes, bytearray, memoryview)):
        return bytes(x).hex()
    if isinstance(x, Path):
        return str(x)
    if isinstance(x, (list, tuple, set, frozenset)):
        return [jsonable(v) for v in x]
    if isinstance(x, Mapping):
        return {str(k): jsonable(v) for k, v in x.items()}
    if is_dataclass(x) and not isinstance(x, type):
        return jsonable(asdict(x))
    return str(x)


def write_json(path: Path, obj: Any) -> None:
    """Write JSON with best-effort conversion so manifests never fail on bytes/Path/etc."""
    safe_mkdir(path.parent)
    with path.open("w", encoding="utf-8", errors="replace", newline="\n") as f:
        json.dump(jsonable(obj), f, ensure_ascii=False, indent=2)
        f.write("\n")


def ccl_version() -> Optional[str]:
    try:
        import importlib.metadata as md
        return md.version("ccl_chromium_reader")
    except Exception:
        return None


def build_self_check() -> Dict[str, Any]:
    info: Dict[str, Any] = {
        "python_version": sys.version,
        "sys.executable": sys.executable,
        "platform": platform.platform(),
        "ccl_chromium_reader_version": ccl_version(),
        "ccl_chromium_reader_module_path": None,
        "default_store_path": None,
    }
    try:
        from ccl_chromium_reader.storage_formats import ccl_leveldb  # type: ignore
        info["ccl_chromium_reader_module_path"] = getattr(ccl_leveldb, "__file__", None)
    except Exception:
        pass
    try:
        info["default_store_path"] = str(default_store_path())
    except NotFound as e:
        info["default_store_path_error"] = e.reason
    return info


def capture_fatal_exception(exc: BaseException, *, out_dir: Optional[Path], errors_path: Optional[Path]) -> int:
    exc_type = type(exc).__name__
    exc_msg = str(exc)
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    print(f"{exc_type}: {exc_msg}", file=sys.stderr, flush=True)
    print(tb, file=sys.stderr, flush=True)

    if out_dir is not None and out_dir.exists():
        fatal_path = out_dir / "fatal.txt"
    else:
        temp_dir = Path(os.getenv("TEMP") or os.getenv("TMPDIR") or tempfile.gettempdir())
        tz = getattr(_dt, "UTC", _dt.timezone.utc)
        timestamp = _dt.datetime.now(tz).strftime("%Y%m%d_%H%M%S")
        fatal_path = temp_dir / f"element_ldb_fatal_{timestamp}.txt"
        print(f"fatal traceback written to: {fatal_path}", file=sys.stderr, flush=True)

    try:
        write_text(fatal_path, tb)
    except OSError:
        pass

    if errors_path is not None:
        evt = {
            "stage": "fatal",
            "exc_type": exc_type,
            "exc": exc_msg,
            "traceback": tb,
            "ts_utc": utc_now_iso(),
        }
        try:
            with errors_path.open("a", encoding="utf-8", errors="replace", newline="\n") as f:
                f.write(json.dumps(jsonable(evt), ensure_ascii=False) + "\n")
        except OSError:
            pass

    return 2


# -----------------------------
# Writers
# -----------------------------

def _csv_cellify(v: Any, *, max_chars: int = 32_000) -> str:
    """
    Convert arbitrary values to a CSV-safe string (bounded).
    NOTE: CSV is a convenience output; metadata.json remains canonical.
    """
    if v is None:
        s = ""
    elif isinstance(v, (bytes, bytearray, memoryview)):
        s = best_effort_text(v)
    elif isinstance(v, (dict, list, tuple)):
        s = json.dumps(jsonable(v), ensure_ascii=False)
    else:
        s = str(v)

    # Embedded NULs break csv writers on some platforms
    s = s.replace("\x00", "")

    if len(s) > max_chars:
        s = s[: max_chars - 20] + "…[truncated]"
    return s


class JsonlWriter:
    def __init__(self, path: Path):
        self.path = path
        safe_mkdir(path.parent)
        self.f = path.open("w", encoding="utf-8", errors="replace", newline="\n")
        self.count = 0

    def write(self, obj: Any) -> None:
        self.f.write(json.dumps(jsonable(obj), ensure_ascii=False) + "\n")
        self.count += 1

    def flush(self) -> None:
        self.f.flush()

    def close(self) -> None:
        if not self.f.closed:
            self.flush()
            self.f.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class CsvWriter:
    def __init__(self, path: Path, fieldnames: List[str], *, max_cell_chars: int = 32_000):
        self.path = path
        self.fieldnames = fieldnames
        self.max_cell_chars = int(max_cell_chars)
        safe_mkdir(path.parent)
        self.f = path.open("w", encoding="utf-8", errors="replace", newline="")
        self.w = csv.DictWriter(
            self.f,
            fieldnames=fieldnames,
            extrasaction="ignore",
            quoting=csv.QUOTE_ALL,
            lineterminator="\n",
        )
        self.w.writeheader()
        self.count = 0

    def write(self, row: Dict[str, Any]) -> None:
        out = {k: _csv_cellify(row.get(k), max_chars=self.max_cell_chars) for k in self.fieldnames}
        self.w.writerow(out)
        self.count += 1

    def close(self) -> None:
        try:
            self.f.flush()
        finally:
            self.f.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# -----------------------------
# Logging
# -----------------------------

class Logger:
    def __init__(self, log_path: Path, verbose: bool = True, warn_limit: int = 25):
        self.log_path = log_path
        safe_mkdir(log_path.parent)
        self._lock = threading.Lock()
        self.verbose = verbose
        self.warn_limit = int(warn_limit) if warn_limit is not None else 25
        self._warn_counts = Counter()
        with log_path.open("w", encoding="utf-8", errors="replace", newline="\n") as f:
            f.write(f"[{utc_now_iso()}] start\n")

    def _append(self, line: str) -> None:
        with self._lock:
            with self.log_path.open("a", encoding="utf-8", errors="replace", newline="\n") as f:
                f.write(line + "\n")

    def info(self, msg: str) -> None:
        line = f"[{utc_now_iso()}] {msg}"
        self._append(line)
        if self.verbose:
            print(line, flush=True)

    def notice(self, msg: str) -> None:
        """Always print to console (and write to run log), regardless of verbose."""
        line = f"[{utc_now_iso()}] {msg}"
        self._append(line)
        print(line, flush=True)

    def warn(self, msg: str) -> None:
        """Write warning to run_log; print to console with rate-limiting to avoid spam."""
        line = f"[{utc_now_iso()}] WARNING: {msg}"
        self._append(line)

        # warn_limit semantics:
        #   -1 => never suppress
        #    0 => suppress all console warning lines
        #   >0 => print at most N times per unique warning message (+1 extra note when suppression starts)
        self._warn_counts[msg] += 1
        n = self._warn_counts[msg]

        if self.warn_limit == -1:
            print(line, flush=True)
            return
        if self.warn_limit == 0:
            return
        if n <= self.warn_limit:
            print(line, flush=True)
            return
        if n == self.warn_limit + 1:
            print(f"[{utc_now_iso()}] WARNING: (suppressed further repeats of this warning) {msg}", flush=True)

    def error(self, msg: str) -> None:
        line = f"[{utc_now_iso()}] ERROR: {msg}"
        self._append(line)
        print(line, flush=True)


def log_error_event(
    errors_writer: Optional[JsonlWriter],
    logger: Optional[Logger],
    *,
    stage: str,
    context: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """
    Write a structured error event to errors.jsonl (if available) and emit a one-line WARNING to console.
    """
    evt: Dict[str, Any] = {"ts_utc": utc_now_iso(), "stage": stage}
    if context:
        evt.update(context)
    if exc is not None:
        evt["exc_type"] = type(exc).__name__
        evt["exc"] = str(exc)
        if exc.__traceback__ is not None:
            evt["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__, limit=50))

    if errors_writer is not None:
        errors_writer.write(evt)

    if logger is not None:
        msg = f"stage={stage}"
        if exc is not None:
            msg += f" err={type(exc).__name__}: {exc}"
        logger.warn(msg)


# -----------------------------
# Data model
# -----------------------------

@dataclass(frozen=True)
class RawEntry:
    key: bytes
    value: bytes


@dataclass(frozen=True)
class DecodedKey:
    namespace_matched: bool
    field_name: str
    # Set when the field name needed replacement characters; such keys are never classified.
    anomaly: Optional[str] = None


@dataclass(frozen=True)
class NormalizedValue:
    text: str
    was_binary: bool = False

    def to_bytes(self) -> bytes:
        """Recover the original value bytes of a hex-rendered value."""
        if not self.was_binary:
            raise ValueError("only binary (hex-rendered) values can be reversed")
        return bytes.fromhex(self.text)


SCALAR = "scalar"
LIST = "list"
IGNORE = "ignore"

SCALAR_SLOTS = (
    "user_id",
    "display_name",
    "avatar_url",
    "device_id",
    "device_name",
    "theme",
    "language",
    "notifications_enabled",
    "curve25519_key",
    "ed25519_key",
    "last_room_id",
)
LIST_SLOTS = ("room_ids", "encrypted_rooms")


@dataclass(frozen=True)
class MetadataRecord:
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    theme: Optional[str] = None
    language: Optional[str] = None
    notifications_enabled: Optional[str] = None
    curve25519_key: Optional[str] = None
    ed25519_key: Optional[str] = None
    last_room_id: Optional[str] = None
    room_ids: Tuple[str, ...] = ()
    encrypted_rooms: Tuple[str, ...] = ()
    raw_entries: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    # raw_entries keys whose surviving value is hex-rendered; not part of metadata.json
    binary_keys: FrozenSet[str] = frozenset()


# -----------------------------
# Key codec
# -----------------------------

# Chromium writes a string-format byte in front of every script-visible string:
# 0x01 = 8-bit text, 0x00 = UTF-16-LE.
# 8-bit text is decoded as strict UTF-8 on purpose: invalid sequences must fall back to hex.
# Chromium actually writes Latin-1 after 0x01, so non-ASCII Latin-1 values (b"\x01Jos\xe9")
# end up hex-rendered and unclassified. Known limit.
_STRING_FORMATS = {0x01: "utf-8", 0x00: "utf-16-le"}


def namespace_for_origin(origin: str) -> bytes:
    """Local Storage keys for an origin look like b"_" + origin + b"\\x00" + <format byte> + <name>."""
    return b"_" + origin.encode("utf-8") + b"\x00"


ELEMENT_NAMESPACE = namespace_for_origin(ELEMENT_ORIGIN)


class KeyCodec:
    def __init__(self, namespace: bytes = ELEMENT_NAMESPACE):
        if not namespace:
            raise ValueError("namespace marker must not be empty")
        self.namespace = bytes(namespace)

    def decode(self, key: bytes) -> DecodedKey:
        key = bytes(key)
        ns_len = len(self.namespace)
        if len(key) <= ns_len or not key.startswith(self.namespace) or key[ns_len] not in _STRING_FORMATS:
            return DecodedKey(namespace_matched=False, field_name=best_effort_text(key))

        encoding = _STRING_FORMATS[key[ns_len]]
        body = key[ns_len + 1:]
        try:
            return DecodedKey(namespace_matched=True, field_name=body.decode(encoding))
        except UnicodeDecodeError as e:
            return DecodedKey(
                namespace_matched=True,
                field_name=body.decode(encoding, errors="replace"),
                anomaly=f"field name is not valid {encoding}: {e.reason}",
            )

    def candidate_keys(self, field_name: str) -> List[bytes]:
        """Raw keys a field name may be stored under, most common encoding first."""
        keys = [self.namespace + b"\x01" + field_name.encode("utf-8")]
        if all(ord(ch) < 0x100 for ch in field_name):
            latin = self.namespace + b"\x01" + field_name.encode("latin-1")
            if latin not in keys:
                keys.append(latin)
        keys.append(self.namespace + b"\x00" + field_name.encode("utf-16-le"))
        return keys


# -----------------------------
# Value normalization
# -----------------------------

_STRUCTURAL_WHITESPACE = frozenset("\t\n\r")


def strip_control_chars(text: str) -> str:
    return "".join(ch for ch in text if ch in _STRUCTURAL_WHITESPACE or unicodedata.category(ch) != "Cc")


def normalize_value(value: Union[bytes, bytearray, memoryview]) -> NormalizedValue:
    """Decode a Local Storage value into stable, printable text.

    The leading string-format byte picks the decoder; values without one are tried as UTF-8.
    Decoding is strict: anything that does not decode, or decodes to nothing but control
    characters, is rendered as lowercase hex of the *whole* original value.
    """
    raw = bytes(value)
    if not raw:
        return NormalizedValue("")

    encoding = _STRING_FORMATS.get(raw[0])
    payload = raw[1:] if encoding else raw
    try:
        text = payload.decode(encoding or "utf-8")
    except UnicodeDecodeError:
        return NormalizedValue(raw.hex(), was_binary=True)

    cleaned = strip_control_chars(text)
    if text and not cleaned:
        return NormalizedValue(raw.hex(), was_binary=True)
    return NormalizedValue(cleaned)


# -----------------------------
# Field catalog + classification
# -----------------------------

@dataclass(frozen=True)
class FieldRule:
    pattern: str
    match: str  # "exact" | "prefix"
    kind: str  # SCALAR | LIST | IGNORE
    slot: Optional[str] = None
    source: str = "value"  # "value" | "suffix" | "json"
    member: Optional[str] = None  # JSON member name when source == "json"
    when_value: Optional[str] = None  # fire only if the value equals this (case-insensitive)


class Contribution(NamedTuple):
    kind: str
    slot: str
    value: str


FIELD_CATALOG: Tuple[FieldRule, ...] = (
    FieldRule("mx_user_id", "exact", SCALAR, "user_id"),
    FieldRule("mx_profile_displayname", "exact", SCALAR, "display_name"),
    FieldRule("mx_profile_avatar_url", "exact", SCALAR, "avatar_url"),
    FieldRule("mx_device_id", "exact", SCALAR, "device_id"),
    FieldRule("mx_device_display_name", "exact", SCALAR, "device_name"),
    FieldRule("mx_theme", "exact", SCALAR, "theme"),
    FieldRule("mx_language", "exact", SCALAR, "language"),
    FieldRule("mx_local_settings", "exact", SCALAR, "theme", source="json", member="theme"),
    FieldRule("mx_local_settings", "exact", SCALAR, "language", source="json", member="language"),
    FieldRule("mx_notifications_enabled", "exact", SCALAR, "notifications_enabled"),
    FieldRule("mx_crypto_curve25519_key", "exact", SCALAR, "curve25519_key"),
    FieldRule("mx_crypto_ed25519_key", "exact", SCALAR, "ed25519_key"),
    FieldRule("mx_last_room_id", "exact", SCALAR, "last_room_id"),
    FieldRule("mx_last_room_id", "exact", LIST, "room_ids"),
    FieldRule("mx_access_token", "exact", IGNORE),
    FieldRule("mx_hs_url", "exact", IGNORE),
    FieldRule("mx_is_url", "exact", IGNORE),
    FieldRule("mx_crypto_initialised", "exact", IGNORE),
    # bare and camelCase spellings seen in older clients and exported settings
    FieldRule("userId", "exact", SCALAR, "user_id"),
    FieldRule("user_id", "exact", SCALAR, "user_id"),
    FieldRule("displayName", "exact", SCALAR, "display_name"),
    FieldRule("display_name", "exact", SCALAR, "display_name"),
    FieldRule("displayname", "exact", SCALAR, "display_name"),
    FieldRule("avatarUrl", "exact", SCALAR, "avatar_url"),
    FieldRule("avatar_url", "exact", SCALAR, "avatar_url"),
    FieldRule("deviceId", "exact", SCALAR, "device_id"),
    FieldRule("device_id", "exact", SCALAR, "device_id"),
    FieldRule("deviceName", "exact", SCALAR, "device_name"),
    FieldRule("device_name", "exact", SCALAR, "device_name"),
    FieldRule("locale", "exact", SCALAR, "language"),
    FieldRule("mx_locale", "exact", SCALAR, "language"),
    FieldRule("curve25519", "exact", SCALAR, "curve25519_key"),
    FieldRule("curve25519_key", "exact", SCALAR, "curve25519_key"),
    FieldRule("curve25519Key", "exact", SCALAR, "curve25519_key"),
    FieldRule("ed25519", "exact", SCALAR, "ed25519_key"),
    FieldRule("ed25519_key", "exact", SCALAR, "ed25519_key"),
    FieldRule("ed25519Key", "exact", SCALAR, "ed25519_key"),
    # per-room keys: the suffix is the room id
    FieldRule("mx_cider_state_", "prefix", LIST, "room_ids", source="suffix"),
    FieldRule("mx_wysiwyg_state_", "prefix", LIST, "room_ids", source="suffix"),
    FieldRule("mx_room_encrypted_", "prefix", LIST, "room_ids", source="suffix"),
    FieldRule("mx_room_encrypted_", "prefix", LIST, "encrypted_rooms", source="suffix", when_value="true"),
)


class FieldCatalog:
    """Immutable lookup over a tuple of FieldRules.

    Exact rules win; prefix rules are only consulted when no exact rule exists for the
    field name, and then every rule sharing the longest matching prefix fires.
    """

    def __init__(self, rules: Iterable[FieldRule]):
        exact: Dict[str, List[FieldRule]] = {}
        prefix: Dict[str, List[FieldRule]] = {}
        for rule in rules:
            _validate_rule(rule)
            target = exact if rule.match == "exact" else prefix
            target.setdefault(rule.pattern, []).append(rule)
        self._exact = MappingProxyType({k: tuple(v) for k, v in exact.items()})
        self._prefixes = tuple(sorted(((k, tuple(v)) for k, v in prefix.items()), key=lambda kv: -len(kv[0])))

    def lookup(self, field_name: str) -> Tuple[Tuple[FieldRule, ...], str]:
        """Return (rules, suffix); suffix is empty for exact matches."""
        rules = self._exact.get(field_name)
        if rules:
            return rules, ""
        for pattern, prefix_rules in self._prefixes:
            if field_name.startswith(pattern):
                return prefix_rules, field_name[len(pattern):]
        return (), ""


def _validate_rule(rule: FieldRule) -> None:
    if rule.match not in ("exact", "prefix"):
        raise ValueError(f"bad match kind {rule.match!r} for {rule.pattern!r}")
    if not rule.pattern:
        raise ValueError("catalog pattern must not be empty")
    if rule.kind == IGNORE:
        return
    slots = SCALAR_SLOTS if rule.kind == SCALAR else LIST_SLOTS if rule.kind == LIST else None
    if slots is None:
        raise ValueError(f"bad slot kind {rule.kind!r} for {rule.pattern!r}")
    if rule.slot not in slots:
        raise ValueError(f"unknown {rule.kind} slot {rule.slot!r} for {rule.pattern!r}")
    if rule.source not in ("value", "suffix", "json"):
        raise ValueError(f"bad source {rule.source!r} for {rule.pattern!r}")
    if rule.source == "suffix" and rule.match != "prefix":
        raise ValueError(f"suffix capture needs a prefix rule: {rule.pattern!r}")
    if rule.source == "json" and not rule.member:
        raise ValueError(f"json rule without member: {rule.pattern!r}")


DEFAULT_CATALOG = FieldCatalog(FIELD_CATALOG)


def _json_member(text: str, member: str) -> Optional[str]:
    try:
        obj = json.loads(text)
    except ValueError:
        return None
    if not isinstance(obj, dict) or member not in obj:
        return None
    v = obj[member]
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (str, int, float)):
        return str(v)
    return None


def classify(decoded: DecodedKey, value: NormalizedValue, catalog: FieldCatalog = DEFAULT_CATALOG) -> List[Contribution]:
    """Map one decoded entry to the record slots it feeds. Empty list means raw only."""
    if not decoded.namespace_matched or decoded.anomaly or value.was_binary:
        return []

    rules, suffix = catalog.lookup(decoded.field_name)
    out: List[Contribution] = []
    for rule in rules:
        if rule.kind == IGNORE:
            continue
        if rule.when_value is not None and value.text.strip().lower() != rule.when_value.lower():
            continue
        if rule.source == "suffix":
            v: Optional[str] = suffix or None
        elif rule.source == "json":
            v = _json_member(value.text, rule.member or "")
        else:
            v = value.text
        if v is None:
            continue
        out.append(Contribution(rule.kind, rule.slot or "", v))
    return out


# -----------------------------
# Aggregation
# -----------------------------

class MetadataAggregator:
    """Folds classified entries into a MetadataRecord, in scan order.

    Scalars: first observation wins. Lists: append unless already present.
    raw_entries: every entry, last write wins on a repeated key (its was_binary flag with it).
    """

    def __init__(self):
        self._scalars: Dict[str, str] = {}
        self._lists: Dict[str, List[str]] = {slot: [] for slot in LIST_SLOTS}
        self._raw: Dict[str, str] = {}
        self._binary: Set[str] = set()
        self._finished = False

    def add(self, key: str, value: str, contributions: Sequence[Contribution] = (), *, was_binary: bool = False) -> None:
        if self._finished:
            raise RuntimeError("aggregator already finished")
        self._raw[key] = value
        if was_binary:
            self._binary.add(key)
        else:
            self._binary.discard(key)
        for c in contributions:
            if c.kind == SCALAR:
                self._scalars.setdefault(c.slot, c.value)
            elif c.kind == LIST:
                bucket = self._lists[c.slot]
                if c.value not in bucket:
                    bucket.append(c.value)

    def finish(self) -> MetadataRecord:
        self._finished = True
        return MetadataRecord(
            **self._scalars,
            room_ids=tuple(self._lists["room_ids"]),
            encrypted_rooms=tuple(self._lists["encrypted_rooms"]),
            raw_entries=MappingProxyType(dict(self._raw)),
            binary_keys=frozenset(self._binary),
        )


# -----------------------------
# Export
# -----------------------------

OUTPUT_FIELDS = (
    "user_id",
    "display_name",
    "avatar_url",
    "theme",
    "language",
    "notifications_enabled",
    "room_ids",
    "encrypted_rooms",
    "device_id",
    "device_name",
    "curve25519_key",
    "ed25519_key",
    "last_room_id",
    "raw_entries",
)


def _check_record(record: MetadataRecord) -> None:
    for name in SCALAR_SLOTS:
        v = getattr(record, name)
        if v is not None and not isinstance(v, str):
            raise SerializationError(f"scalar {name} holds {type(v).__name__}, expected str")
    for name in LIST_SLOTS:
        items = getattr(record, name)
        if any(not isinstance(v, str) for v in items):
            raise SerializationError(f"list {name} holds a non-string item")
        if len(set(items)) != len(items):
            raise SerializationError(f"list {name} holds duplicates")
    for k, v in record.raw_entries.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise SerializationError(f"raw entry {k!r} is not str -> str")


def to_text(record: MetadataRecord) -> str:
    """Pretty JSON with a fixed field order and raw_entries sorted by key."""
    _check_record(record)
    doc: Dict[str, Any] = {}
    for name in OUTPUT_FIELDS:
        if name == "raw_entries":
            doc[name] = {k: record.raw_entries[k] for k in sorted(record.raw_entries)}
        elif name in LIST_SLOTS:
            doc[name] = list(getattr(record, name))
        else:
            doc[name] = getattr(record, name)
    try:
        return json.dumps(doc, ensure_ascii=False, indent=2) + "\n"
    except (TypeError, ValueError) as e:
        raise SerializationError(f"could not serialize record: {e}") from e


# -----------------------------
# Store access
# -----------------------------

_DATA_FILE_RE = re.compile(r"^[0-9]{6}\.(ldb|log|sst)$", re.IGNORECASE)
_MANIFEST_RE = re.compile(r"^MANIFEST-[0-9]+$")


def looks_like_leveldb_dir(p: Path) -> bool:
    if not p.is_dir():
        return False
    for child in p.iterdir():
        if not child.is_file():
            continue
        if child.name == "CURRENT" or _MANIFEST_RE.match(child.name) or _DATA_FILE_RE.match(child.name):
            return True
    return False


def _check_current_pointer(p: Path) -> None:
    current = p / "CURRENT"
    if not current.is_file():
        return
    try:
        name = current.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError) as e:
        raise CorruptStore(p, f"unreadable CURRENT file ({type(e).__name__})") from e
    if not _MANIFEST_RE.match(name):
        raise CorruptStore(p, f"CURRENT does not name a manifest ({name[:60]!r})")
    if not (p / name).is_file():
        raise CorruptStore(p, f"CURRENT points at missing {name}")


def _is_deleted(state: Any) -> bool:
    return getattr(state, "name", str(state)) == "Deleted"


class StoreReader:
    """Read-only handle over one LevelDB directory.

    The engine is only touched under self._lock, so a point lookup never interleaves with the
    engine iteration of a scan. The resolved live view is built once and reused.
    """

    def __init__(self, path: Path, db: Any, codec: KeyCodec):
        self.path = path
        self.codec = codec
        self._db = db
        self._lock = threading.Lock()
        self._live: Optional[Dict[bytes, bytes]] = None
        self._closed = False

    @classmethod
    def open(cls, path: Union[str, Path], *, namespace: bytes = ELEMENT_NAMESPACE) -> "StoreReader":
        p = Path(path)
        if not p.exists():
            raise NotFound(p, "store path does not exist")
        if not p.is_dir():
            raise NotFound(p, "store path is not a directory")
        if not looks_like_leveldb_dir(p):
            raise NotFound(p, "no LevelDB files (CURRENT, MANIFEST-*, *.log, *.ldb) in directory")
        _check_current_pointer(p)

        try:
            from ccl_chromium_reader.storage_formats import ccl_leveldb  # type: ignore
        except ImportError as e:
            raise MissingDependency("ccl_chromium_reader") from e

        try:
            db = ccl_leveldb.RawLevelDb(p)
        except Exception as e:
            raise CorruptStore(p, f"engine could not open store ({type(e).__name__}: {e})") from e
        return cls(p, db, KeyCodec(namespace))

    def _load_live_view(self) -> Dict[bytes, bytes]:
        # caller holds self._lock
        if self._closed:
            raise RuntimeError(f"store handle is closed: {self.path}")
        if self._live is not None:
            return self._live

        newest: Dict[bytes, Tuple[int, bool, bytes]] = {}
        try:
            for rec in self._db.iterate_records_raw():
                key = bytes(getattr(rec, "user_key", rec.key))
                seq = int(rec.seq)
                seen = newest.get(key)
                # Files come in file-number order; on equal seq the later file wins.
                if seen is None or seq >= seen[0]:
                    newest[key] = (seq, _is_deleted(rec.state), bytes(rec.value or b""))
        except Exception as e:
            raise CorruptStore(self.path, f"engine failed while reading records ({type(e).__name__}: {e})") from e

        self._live = {k: v for k, (_seq, deleted, v) in sorted(newest.items()) if not deleted}
        return self._live

    def scan(self) -> Iterator[RawEntry]:
        """Live entries in ascending key order. Each call starts from the beginning."""
        with self._lock:
            live = self._load_live_view()
        for key, value in live.items():
            yield RawEntry(key, value)

    def get(self, field_name: str) -> Optional[NormalizedValue]:
        with self._lock:
            live = self._load_live_view()
        for key in self.codec.candidate_keys(field_name):
            if key in live:
                return normalize_value(live[key])
        return None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._live = None
            close = getattr(self._db, "close", None)
            if close is not None:
                close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def open_store(path: Union[str, Path], *, namespace: bytes = ELEMENT_NAMESPACE) -> StoreReader:
    return StoreReader.open(path, namespace=namespace)


# -----------------------------
# Pipeline
# -----------------------------

@dataclass
class ExtractionStats:
    entries: int = 0
    namespace_matched: int = 0
    classified: int = 0
    binary_values: int = 0
    anomalies: int = 0

    def summary(self) -> Dict[str, int]:
        return asdict(self)


def extract_from_entries(
    entries: Iterable[RawEntry],
    *,
    codec: KeyCodec,
    catalog: FieldCatalog = DEFAULT_CATALOG,
    logger: Optional[Logger] = None,
    errors_writer: Optional[JsonlWriter] = None,
) -> Tuple[MetadataRecord, ExtractionStats]:
    stage = "scan"
    agg = MetadataAggregator()
    stats = ExtractionStats()

    for entry in entries:
        stats.entries += 1
        decoded = codec.decode(entry.key)
        value = normalize_value(entry.value)
        if value.was_binary:
            stats.binary_values += 1

        anomaly: Optional[DecodeAnomaly] = None
        if decoded.anomaly:
            anomaly = DecodeAnomaly(decoded.field_name, decoded.anomaly)
        elif decoded.namespace_matched and value.was_binary:
            anomaly = DecodeAnomaly(decoded.field_name, "value is not text; kept as hex")

        if decoded.namespace_matched:
            stats.namespace_matched += 1
        if anomaly is not None:
            stats.anomalies += 1
            log_error_event(
                errors_writer,
                logger,
                stage="decode_anomaly",
                context={"key": decoded.field_name, "key_hex": entry.key.hex(), "reason": anomaly.reason},
                exc=anomaly,
            )

        contributions = classify(decoded, value, catalog)
        if contributions:
            stats.classified += 1
        agg.add(decoded.field_name, value.text, contributions, was_binary=value.was_binary)

    record = agg.finish()
    if logger is not None:
        logger.info(
            f"[{stage}] entries={stats.entries} namespaced={stats.namespace_matched} classified={stats.classified} "
            f"binary={stats.binary_values} anomalies={stats.anomalies}"
        )
    return record, stats


def extract_metadata(
    path: Union[str, Path],
    *,
    namespace: bytes = ELEMENT_NAMESPACE,
    catalog: FieldCatalog = DEFAULT_CATALOG,
    logger: Optional[Logger] = None,
    errors_writer: Optional[JsonlWriter] = None,
) -> Tuple[MetadataRecord, ExtractionStats]:
    """Open, scan once, classify and aggregate. Store errors propagate; nothing partial is returned."""
    with open_store(path, namespace=namespace) as store:
        if logger is not None:
            logger.info(f"[open] store={store.path} namespace={namespace!r}")
        return extract_from_entries(
            store.scan(), codec=store.codec, catalog=catalog, logger=logger, errors_writer=errors_writer
        )


# -----------------------------
# Working copy helpers
# -----------------------------

def default_store_path(system: Optional[str] = None, environ: Optional[Mapping[str, str]] = None,
                       home: Optional[Path] = None) -> Path:
    """Element Desktop's Local Storage directory for the given (or current) OS."""
    system = system or platform.system()
    environ = os.environ if environ is None else environ
    home = Path.home() if home is None else home
    if system == "Linux":
        return home / ".config" / "Element" / "Local Storage" / "leveldb"
    if system == "Darwin":
        return home / "Library" / "Application Support" / "Element" / "Local Storage" / "leveldb"
    if system == "Windows":
        appdata = environ.get("APPDATA")
        if not appdata:
            raise NotFound(home, "APPDATA is not set")
        return Path(appdata) / "Element" / "Local Storage" / "leveldb"
    raise NotFound(home, f"unsupported OS {system!r}")


def make_working_copy(src: Union[str, Path], dest: Union[str, Path]) -> Dict[str, str]:
    """Copy a store directory to dest (replacing it) and return sha256 per copied file.

    The engine's LOCK file is not copied.
    """
    src_p = Path(src).expanduser().resolve()
    dest_p = Path(dest).expanduser().resolve()
    if not src_p.is_dir():
        raise NotFound(src_p, "source store directory not found")
    if dest_p == src_p or src_p in dest_p.parents:
        raise ValueError(f"working copy must live outside the source: {dest_p}")

    if dest_p.exists():
        shutil.rmtree(dest_p)
    safe_mkdir(dest_p.parent)
    shutil.copytree(src_p, dest_p, ignore=shutil.ignore_patterns("LOCK"))

    hashes: Dict[str, str] = {}
    for f in sorted(dest_p.rglob("*")):
        if f.is_file():
            hashes[f.relative_to(dest_p).as_posix()] = sha256_file(f)
    return hashes


def export_raw_entries_csv(path: Path, record: MetadataRecord) -> int:
    with CsvWriter(path, fieldnames=["key", "value", "was_binary"]) as cw:
        for k in sorted(record.raw_entries):
            cw.write({"key": k, "value": record.raw_entries[k], "was_binary": k in record.binary_keys})
        return cw.count


# -----------------------------
# CLI
# -----------------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Extract Element Desktop metadata from a Local Storage LevelDB working copy (read-only).")
    source_group = ap.add_mutually_exclusive_group()
    source_group.add_argument("--store", default="", help="LevelDB directory to read (a working copy, never the live profile).")
    source_group.add_argument("--copy-from", default="", help="Make a working copy of this store directory under <out>/working_copy first, then read the copy.")
    source_group.add_argument("--from-installed", action="store_true", help="Like --copy-from, using Element Desktop's default Local Storage path for this OS.")
    ap.add_argument("--out", default="", help="Output directory (default: ./element_ldb_export_<timestamp>).")
    ap.add_argument("--origin", default=ELEMENT_ORIGIN, help=f"Local Storage origin whose keys are classified (default: {ELEMENT_ORIGIN}).")
    ap.add_argument("--csv", action="store_true", help="Also write raw_entries.csv.")
    ap.add_argument("--no-verbose", action="store_true", help="Disable console logging (still writes run_log.txt).")
    ap.add_argument("--warn-limit", type=int, default=25, help="Max console repeats per warning; -1 never suppress, 0 silence (default: 25).")
    ap.add_argument("--self-check", action="store_true", help="Write <out>/self_check.json describing the environment.")

    args = ap.parse_args(argv)

    tz = getattr(_dt, "UTC", _dt.timezone.utc)
    out_dir = Path(args.out).resolve() if args.out else (Path.cwd() / f"element_ldb_export_{_dt.datetime.now(tz).strftime('%Y%m%d_%H%M%S')}")
    safe_mkdir(out_dir)
    global _FATAL_OUT_DIR, _FATAL_ERRORS_PATH
    _FATAL_OUT_DIR = out_dir

    wants_store = bool(args.store or args.copy_from or args.from_installed)
    if args.self_check:
        write_json(out_dir / "self_check.json", build_self_check())
        if not wants_store:
            return 0
    elif not wants_store:
        ap.print_usage(sys.stderr)
        print("error: one of --store, --copy-from, --from-installed is required", file=sys.stderr)
        return 2

    logger = Logger(out_dir / "run_log.txt", verbose=(not args.no_verbose), warn_limit=args.warn_limit)
    errors_path = out_dir / "errors.jsonl"
    errors_writer = JsonlWriter(errors_path)
    _FATAL_ERRORS_PATH = errors_path

    manifest: Dict[str, Any] = {
        "run": {
            "started_utc": utc_now_iso(),
            "script": Path(__file__).name,
            "out": str(out_dir),
            "args": vars(args),
            "python": {"version": sys.version, "executable": sys.executable},
        },
        "package": {"ccl_chromium_reader_version": ccl_version()},
        "working_copy": None,
        "stats": None,
    }

    try:
        store_path = Path(args.store).expanduser()
        source: Optional[Path] = None
        if args.copy_from:
            source = Path(args.copy_from).expanduser()
        elif args.from_installed:
            try:
                source = default_store_path()
            except NotFound as e:
                logger.error(f"could not resolve installed store: {e.reason}")
                return 2

        if source is not None:
            store_path = out_dir / "working_copy"
            try:
                hashes = make_working_copy(source, store_path)
            except NotFound as e:
                logger.error(f"could not copy store: {e.reason} ({e.path})")
                log_error_event(errors_writer, None, stage="working_copy", context={"source": str(source)}, exc=e)
                return 2
            manifest["working_copy"] = {"source": str(source), "path": str(store_path), "sha256": hashes}
            logger.info(f"[copy] {len(hashes)} files from {source} -> {store_path}")

        manifest["run"]["store"] = str(store_path)

        try:
            record, stats = extract_metadata(
                store_path,
                namespace=namespace_for_origin(args.origin),
                logger=logger,
                errors_writer=errors_writer,
            )
        except (NotFound, CorruptStore) as e:
            logger.error(f"could not open store: {e.reason} ({e.path})")
            log_error_event(errors_writer, None, stage="open", context={"store": str(store_path)}, exc=e)
            manifest["run"]["failed"] = f"{type(e).__name__}: {e.reason}"
            write_json(out_dir / "manifest.json", manifest)
            return 2
        except MissingDependency as e:
            logger.error(f"{e} (pip install ccl_chromium_reader)")
            manifest["run"]["failed"] = f"{type(e).__name__}: {e.dependency}"
            write_json(out_dir / "manifest.json", manifest)
            return 2

        write_text(out_dir / "metadata.json", to_text(record))
        manifest["stats"] = stats.summary()
        if args.csv:
            rows = export_raw_entries_csv(out_dir / "raw_entries.csv", record)
            logger.info(f"[csv] rows={rows}")

        manifest["run"]["finished_utc"] = utc_now_iso()
        write_json(out_dir / "manifest.json", manifest)
        logger.notice(f"done: {out_dir / 'metadata.json'}")
        return 0
    finally:
        errors_writer.close()


if __name__ == "__main__":
    try:
        exit_code = main()
    except BaseException as exc:
        if isinstance(exc, SystemExit):
            raise
        exit_code = capture_fatal_exception(exc, out_dir=_FATAL_OUT_DIR, errors_path=_FATAL_ERRORS_PATH)
    raise SystemExit(exit_code)
