"""Raft log entries and RPC messages, with binary and JSON encodings."""

from __future__ import annotations

import dataclasses
import json
import struct
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

_ENTRY_HEADER = struct.Struct("<qiII")

T = TypeVar("T")


@dataclass(frozen=True)
class Entry:
    """One replicated log entry."""

    seq: int = 0
    term: int = 0
    key: str = ""
    value: str = ""

    def encode(self) -> bytes:
        """Serialise the entry to bytes."""
        key_bytes = self.key.encode("utf-8")
        value_bytes = self.value.encode("utf-8")
        try:
            header = _ENTRY_HEADER.pack(self.seq, self.term, len(key_bytes), len(value_bytes))
        except struct.error as exc:
            raise ValueError(f"entry field out of range: {exc}") from exc
        return header + key_bytes + value_bytes

    @classmethod
    def decode(cls, data: bytes) -> "Entry":
        """Parse bytes produced by encode()."""
        data = bytes(data)
        if len(data) < _ENTRY_HEADER.size:
            raise ValueError("entry data is shorter than its header")
        seq, term, key_len, value_len = _ENTRY_HEADER.unpack_from(data)
        body = data[_ENTRY_HEADER.size:]
        if len(body) != key_len + value_len:
            raise ValueError("entry data length does not match its header")
        key = body[:key_len].decode("utf-8")
        value = body[key_len:].decode("utf-8")
        return cls(seq=seq, term=term, key=key, value=value)


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    leader_commit: int = 0
    entries: list[Entry] = field(default_factory=list)


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    x_term: int = 0
    x_index: int = 0
    x_len: int = 0


def to_json(message: Any) -> bytes:
    """Serialise a message dataclass to compact JSON bytes."""
    if not dataclasses.is_dataclass(message) or isinstance(message, type):
        raise TypeError(f"not a message instance: {message!r}")
    return json.dumps(dataclasses.asdict(message), separators=(",", ":")).encode("utf-8")


def from_json(cls: type[T], data: Union[bytes, str]) -> T:
    """Build a message of type `cls` from JSON produced by to_json()."""
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise TypeError(f"not a message type: {cls!r}")
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("message JSON must be an object")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(payload) - known
    if unknown:
        raise ValueError(f"unknown fields for {cls.__name__}: {sorted(unknown)}")
    if cls is AppendEntriesArgs and "entries" in payload:
        raw_entries = payload["entries"]
        if not isinstance(raw_entries, list):
            raise ValueError("entries must be a list")
        payload["entries"] = [_entry_from_dict(item) for item in raw_entries]
    return cls(**payload)


def _entry_from_dict(item: Any) -> Entry:
    if not isinstance(item, dict):
        raise ValueError("each entry must be an object")
    try:
        return Entry(**item)
    except TypeError as exc:
        raise ValueError(f"invalid entry: {exc}") from exc