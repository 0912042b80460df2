"""
Minimal TLV encoder/decoder for cairn trees, snapshot log records and the
reference table.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint; signed fields are zigzag-mapped first
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len); undecodable filename
  bytes survive through surrogateescape
- Digests: raw 32 bytes (hex in the decoded dicts)

Entry / manifest (tag=1 inside a tree's entries container)
- 1: kind (varint; 0=file, 1=dir, 2=symlink)
- 2: path (utf8)
- 3: mode (varint)
- 4: mtime_ns (zigzag varint)
- 5: size (varint)
- 6: symlink_target (utf8)
- 7: chunks (container; tag=1 per chunk digest)
- 8: file_digest (bytes[32])

Tree
- 1: version (varint major || varint minor)
- 2: snapshot_id (varint)
- 3: entries (container)

Seal record
- 1: snapshot_id (varint)
- 2: name (utf8)
- 3: created_ns (varint)
- 4: source (utf8)
- 5: parent_id (varint, optional)
- 6: tree_digest (bytes[32])
- 7: merkle_root (bytes[32])
- 8: entry_count (varint)
- 9: file_count (varint)
- 10: total_size (varint)
- 11: chunk_refs (varint)

Delete record
- 1: snapshot_id (varint)
- 2: deleted_ns (varint)

Reference table
- 1: version (varint major || varint minor)
- 2: refs (container; tag=1 per ref: bytes[32] digest || varint count)
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 70:
            raise ValueError("varint: too large")


def _varint(data: bytes) -> int:
    v, _ = _varint_decode(data, 0)
    return v


def _zigzag_encode(n: int) -> bytes:
    return _varint_encode(n * 2 if n >= 0 else -n * 2 - 1)


def _zigzag(data: bytes) -> int:
    v = _varint(data)
    return v >> 1 if not v & 1 else -((v + 1) >> 1)


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _encode_str(s: str) -> bytes:
    return s.encode("utf-8", "surrogateescape")


def _decode_str(b: bytes) -> str:
    return b.decode("utf-8", "surrogateescape")


def _digest_bytes(hex_digest: str) -> bytes:
    raw = bytes.fromhex(hex_digest)
    if len(raw) != 32:
        raise ValueError("digest must be 32 bytes")
    return raw


def _digest_hex(raw: bytes) -> str:
    if len(raw) != 32:
        raise ValueError("digest must be 32 bytes")
    return raw.hex()


def _iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = _varint_decode(data, pos)
        ln, pos = _varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def _version(payload: bytes) -> Dict[str, int]:
    major, pos = _varint_decode(payload, 0)
    minor, _ = _varint_decode(payload, pos)
    return {"major": major, "minor": minor}


# -------- Entries --------

def dumps_entry(ent: Dict) -> bytes:
    out = bytearray()
    out += _tlv(1, _varint_encode(int(ent["kind"])))
    out += _tlv(2, _encode_str(str(ent["path"])))
    if ent.get("mode") is not None:
        out += _tlv(3, _varint_encode(int(ent["mode"])))
    if ent.get("mtime_ns") is not None:
        out += _tlv(4, _zigzag_encode(int(ent["mtime_ns"])))
    if ent.get("size"):
        out += _tlv(5, _varint_encode(int(ent["size"])))
    if ent.get("symlink_target") is not None:
        out += _tlv(6, _encode_str(str(ent["symlink_target"])))
    chunks = ent.get("chunks") or []
    if chunks:
        out += _tlv(7, b"".join(_tlv(1, _digest_bytes(d)) for d in chunks))
    if ent.get("file_digest"):
        out += _tlv(8, _digest_bytes(ent["file_digest"]))
    return bytes(out)


def loads_entry(data: bytes, *, max_chunks: int = 50_000_000) -> Dict:
    ent: Dict = {"mode": None, "mtime_ns": None, "size": 0, "symlink_target": None, "chunks": [], "file_digest": None}
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            ent["kind"] = _varint(payload)
        elif tag == 2:
            ent["path"] = _decode_str(payload)
        elif tag == 3:
            ent["mode"] = _varint(payload)
        elif tag == 4:
            ent["mtime_ns"] = _zigzag(payload)
        elif tag == 5:
            ent["size"] = _varint(payload)
        elif tag == 6:
            ent["symlink_target"] = _decode_str(payload)
        elif tag == 7:
            chunks: List[str] = []
            for ctag, cv in _iter_tlvs(payload):
                if ctag != 1:
                    continue
                chunks.append(_digest_hex(cv))
                if len(chunks) > max_chunks:
                    raise ValueError("Entry exceeds max chunks limit")
            ent["chunks"] = chunks
        elif tag == 8:
            ent["file_digest"] = _digest_hex(payload)
    if "kind" not in ent or "path" not in ent:
        raise ValueError("Entry missing kind or path")
    return ent


# -------- Trees --------

def dumps_tree(tree: Dict) -> bytes:
    out = bytearray()
    ver = tree.get("version", {})
    out += _tlv(1, _varint_encode(int(ver.get("major", 0))) + _varint_encode(int(ver.get("minor", 0))))
    out += _tlv(2, _varint_encode(int(tree["snapshot_id"])))
    entries_payload = bytearray()
    for ent in tree.get("entries", []):
        entries_payload += _tlv(1, dumps_entry(ent))
    if entries_payload:
        out += _tlv(3, bytes(entries_payload))
    return bytes(out)


def loads_tree(data: bytes, *, max_entries: int = 10_000_000) -> Dict:
    tree: Dict = {"entries": []}
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            tree["version"] = _version(payload)
        elif tag == 2:
            tree["snapshot_id"] = _varint(payload)
        elif tag == 3:
            for etag, epl in _iter_tlvs(payload):
                if etag != 1:
                    continue
                if len(tree["entries"]) >= max_entries:
                    raise ValueError("Tree exceeds max entries limit")
                tree["entries"].append(loads_entry(epl))
    if "snapshot_id" not in tree:
        raise ValueError("Tree missing snapshot id")
    return tree


# -------- Snapshot log records --------

def dumps_seal(rec: Dict) -> bytes:
    out = bytearray()
    out += _tlv(1, _varint_encode(int(rec["snapshot_id"])))
    out += _tlv(2, _encode_str(str(rec.get("name", ""))))
    out += _tlv(3, _varint_encode(int(rec.get("created_ns", 0))))
    out += _tlv(4, _encode_str(str(rec.get("source", ""))))
    if rec.get("parent_id") is not None:
        out += _tlv(5, _varint_encode(int(rec["parent_id"])))
    out += _tlv(6, _digest_bytes(rec["tree_digest"]))
    out += _tlv(7, _digest_bytes(rec["merkle_root"]))
    out += _tlv(8, _varint_encode(int(rec.get("entry_count", 0))))
    out += _tlv(9, _varint_encode(int(rec.get("file_count", 0))))
    out += _tlv(10, _varint_encode(int(rec.get("total_size", 0))))
    out += _tlv(11, _varint_encode(int(rec.get("chunk_refs", 0))))
    return bytes(out)


def loads_seal(data: bytes) -> Dict:
    rec: Dict = {"parent_id": None}
    int_fields = {1: "snapshot_id", 3: "created_ns", 5: "parent_id", 8: "entry_count", 9: "file_count", 10: "total_size", 11: "chunk_refs"}
    for tag, payload in _iter_tlvs(data):
        if tag in int_fields:
            rec[int_fields[tag]] = _varint(payload)
        elif tag == 2:
            rec["name"] = _decode_str(payload)
        elif tag == 4:
            rec["source"] = _decode_str(payload)
        elif tag == 6:
            rec["tree_digest"] = _digest_hex(payload)
        elif tag == 7:
            rec["merkle_root"] = _digest_hex(payload)
    for key in ("snapshot_id", "tree_digest", "merkle_root"):
        if key not in rec:
            raise ValueError(f"Seal record missing {key}")
    return rec


def dumps_delete(rec: Dict) -> bytes:
    return _tlv(1, _varint_encode(int(rec["snapshot_id"]))) + _tlv(2, _varint_encode(int(rec.get("deleted_ns", 0))))


def loads_delete(data: bytes) -> Dict:
    rec: Dict = {}
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            rec["snapshot_id"] = _varint(payload)
        elif tag == 2:
            rec["deleted_ns"] = _varint(payload)
    if "snapshot_id" not in rec:
        raise ValueError("Delete record missing snapshot id")
    return rec


# -------- Reference table --------

def dumps_refs(refs: Dict[str, int], version: Optional[Tuple[int, int]] = None) -> bytes:
    major, minor = version or (1, 0)
    out = bytearray()
    out += _tlv(1, _varint_encode(major) + _varint_encode(minor))
    body = bytearray()
    for digest in sorted(refs):
        count = int(refs[digest])
        if count <= 0:
            continue
        body += _tlv(1, _digest_bytes(digest) + _varint_encode(count))
    if body:
        out += _tlv(2, bytes(body))
    return bytes(out)


def loads_refs(data: bytes) -> Dict[str, int]:
    refs: Dict[str, int] = {}
    for tag, payload in _iter_tlvs(data):
        if tag != 2:
            continue
        for rtag, rv in _iter_tlvs(payload):
            if rtag != 1:
                continue
            if len(rv) < 33:
                raise ValueError("Reference entry too short")
            count, _ = _varint_decode(rv, 32)
            refs[_digest_hex(rv[:32])] = count
    return refs
