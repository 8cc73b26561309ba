# -*- coding: utf-8 -*-
"""Test helpers that write synthetic UnityFS bundles."""

import struct

import lz4.block
import pytest

COMPRESSION_CODES = {"none": 0, "lz4": 2, "lz4hc": 3}


def _compress(data, compression):
    if compression == "none":
        return data
    mode = "high_compression" if compression == "lz4hc" else "default"
    return lz4.block.compress(data, mode=mode, store_size=False)


def pack_entries(files):
    """Lays `(path, bytes)` pairs back to back; returns the payload and directory nodes."""
    payload = b""
    nodes = []
    for path, data in files:
        nodes.append((len(payload), len(data), 4, path))
        payload += data
    return payload, nodes


def split_blocks(payload, block_sizes):
    blocks = []
    position = 0
    for size in block_sizes:
        blocks.append(payload[position : position + size])
        position += size
    assert position == len(payload), "block sizes must cover the payload"
    return blocks


def build_bundle(
    payload,
    block_sizes,
    nodes,
    compression="lz4",
    flags=None,
    version=7,
    at_end=False,
    signature="UnityFS",
    table_compressed_size=None,
):
    """Returns the bytes of a bundle holding `payload` split into `block_sizes`."""
    block_data = [_compress(chunk, compression) for chunk in split_blocks(payload, block_sizes)]

    table = b"\x00" * 16 + struct.pack(">i", len(block_data))
    for raw, stored in zip(split_blocks(payload, block_sizes), block_data):
        table += struct.pack(">IIH", len(raw), len(stored), COMPRESSION_CODES[compression])
    table += struct.pack(">i", len(nodes))
    for offset, size, node_flags, path in nodes:
        table += struct.pack(">qqI", offset, size, node_flags) + path.encode("utf-8") + b"\x00"
    stored_table = _compress(table, compression)

    if flags is None:
        flags = COMPRESSION_CODES[compression] | (0x80 if at_end else 0)

    prefix = signature.encode("ascii") + b"\x00" + struct.pack(">I", version) + b"5.x.x\x00" + b"2018.4.2f1\x00"
    if signature != "UnityFS":
        return prefix

    header_length = len(prefix) + 8 + 4 + 4 + 4
    padding = b""
    if version >= 7 and header_length % 16:
        padding = b"\x00" * (16 - header_length % 16)
    blocks_blob = b"".join(block_data)
    total = header_length + len(padding) + len(stored_table) + len(blocks_blob)

    header = prefix + struct.pack(
        ">qIII",
        total,
        len(stored_table) if table_compressed_size is None else table_compressed_size,
        len(table),
        flags,
    )
    if at_end:
        return header + padding + blocks_blob + stored_table
    return header + padding + stored_table + blocks_blob


@pytest.fixture
def write_bundle(tmp_path):
    """Writes a bundle built by `build_bundle` and returns its path."""
    counter = iter(range(1000))

    def _write(*args, **kwargs):
        path = tmp_path / f"bundle_{next(counter)}.unity3d"
        path.write_bytes(build_bundle(*args, **kwargs))
        return str(path)

    return _write


@pytest.fixture
def sample_files():
    return [
        ("globalgamemanagers", bytes(range(256)) * 3),
        ("Resources/unity_builtin_extra", b"builtin" * 50),
        ("small", b"xyz"),
        ("CAB-2f4e/CAB-2f4e.resS", bytes((i * 7) % 251 for i in range(1000))),
    ]
