# -*- coding: utf-8 -*-
"""
unity_bundle.py

This module defines the UnityBundle class, which reads "UnityFS" asset bundles
and reconstructs the named entries packed inside them.

The UnityFS (.unity3d / .bundle) file format is structured as follows
(all multi-byte integers big-endian, all strings null-terminated):
1.  Header:
    - Signature (cstr): "UnityFS"
    - Format Version (uint32)
    - Unity Version (cstr), e.g. "5.x.x"
    - Unity Revision (cstr), e.g. "2018.4.2f1"
    Only for the "UnityFS" signature:
    - Size (int64): Total bundle size.
    - Compressed Blocks Info Size (uint32)
    - Uncompressed Blocks Info Size (uint32)
    - Flags (uint32): bits 0-5 select the metadata compression
      (0/1 none, 2 LZ4, 3 LZ4HC), bit 7 places the metadata table at the
      end of the file.
2.  Padding to a 16-byte boundary (format version 7 and later).
3.  Blocks Info (metadata table), possibly compressed:
    - Content Hash (16 bytes, unused)
    - Block Count (int32), then per block:
      Uncompressed Size (uint32), Compressed Size (uint32), Flags (uint16)
    - Entry Count (int32), then per entry:
      Offset (int64), Size (int64), Flags (uint32), Path (cstr)
4.  Block payloads, back to back, in table order. The concatenation of the
    decompressed blocks forms the "entry space" addressed by entry offsets.

Requires:
    - Python 3.9+
    - lz4 library (`pip install lz4`)
"""

import enum
import io
import logging
import os
import struct
from typing import Any, BinaryIO, Dict, List, NamedTuple, Optional, Tuple

import lz4.block

logger = logging.getLogger(__name__)

# --- Constants ---
BUNDLE_SIGNATURE = "UnityFS"
STRING_ENCODING = "utf-8"

FLAG_COMPRESSION_MASK = 0x3F
FLAG_BLOCKS_INFO_AT_END = 0x80

ALIGNMENT_MIN_VERSION = 7
BLOCKS_INFO_ALIGNMENT = 16
CONTENT_HASH_SIZE = 16

CSTR_READ_CHUNK = 64
CHUNK_SIZE = 64 * 1024  # 64KB for streaming operations


# --- Custom Exceptions ---
class UnityBundleError(Exception):
    """Base class for exceptions in this module."""

    pass


class InvalidFormatError(UnityBundleError):
    """Raised when the bundle is malformed or corrupted."""

    pass


class TruncatedDataError(InvalidFormatError):
    """Raised when the data ends in the middle of a field."""

    pass


class DecompressionError(InvalidFormatError):
    """Raised when a block cannot be decompressed to its declared size."""

    pass


class UnsupportedCompressionError(DecompressionError):
    """Raised for compression codes outside none / LZ4 / LZ4HC."""

    pass


class BundleClosedError(UnityBundleError):
    """Raised when a bundle is used after close() (or before open())."""

    pass


class EntryNotFoundError(UnityBundleError, KeyError):
    """Raised when a requested entry is not found in the bundle."""

    pass


# --- Data Model ---
class BundleHeader(NamedTuple):
    signature: str
    version: int
    unity_version: str
    unity_revision: str
    size: int = 0
    compressed_blocks_info_size: int = 0
    uncompressed_blocks_info_size: int = 0
    flags: int = 0


class StorageBlock(NamedTuple):
    compressed_offset: int  # relative to the start of the block payload region
    compressed_size: int
    uncompressed_size: int
    flags: int


class DirectoryEntry(NamedTuple):
    offset: int  # position in entry space
    size: int
    flags: int
    path: str


class CompressionType(enum.Enum):
    """Compression applied to the metadata table and to every storage block."""

    NONE = "none"
    LZ4 = "lz4"
    LZ4HC = "lz4hc"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_flags(cls, flags: int) -> "CompressionType":
        code = flags & FLAG_COMPRESSION_MASK
        if code in (0, 1):
            return cls.NONE
        if code == 2:
            return cls.LZ4
        if code == 3:
            return cls.LZ4HC
        return cls.UNSUPPORTED


# --- Helper Functions ---
def decompress_block(data: bytes, uncompressed_size: int, compression: CompressionType) -> bytes:
    """
    Decompresses one block into exactly `uncompressed_size` bytes.

    Raises:
        UnsupportedCompressionError: for CompressionType.UNSUPPORTED.
        DecompressionError: if the codec rejects the input or the output
            length differs from `uncompressed_size`.
    """
    if compression is CompressionType.UNSUPPORTED:
        raise UnsupportedCompressionError("Unsupported compression type for block data.")

    if compression is CompressionType.NONE:
        result = bytes(data)
    elif uncompressed_size == 0:
        result = b""
    else:
        try:
            result = lz4.block.decompress(data, uncompressed_size=uncompressed_size)
        except lz4.block.LZ4BlockError as e:
            raise DecompressionError(f"Decompression failed ({compression.value}): {e}") from e

    if len(result) != uncompressed_size:
        raise DecompressionError(f"Decompressed size mismatch ({compression.value}): expected {uncompressed_size} bytes, got {len(result)}.")
    return result


def resolve_extract_path(destination_folder: str, entry_name: str) -> Optional[str]:
    """Returns where `entry_name` lands under `destination_folder`, or None if it would escape it."""
    root = os.path.realpath(destination_folder)
    target_path = os.path.realpath(os.path.join(root, entry_name.replace("/", os.sep)))
    if os.path.isabs(entry_name) or os.path.commonpath([root, target_path]) != root:
        return None
    return target_path


class EndianBinaryReader:
    """
    Positioned reader over a seekable binary stream.

    Used both for the bundle file and for the decompressed metadata table.
    Every read advances the position; short reads raise TruncatedDataError.
    """

    def __init__(self, stream: BinaryIO, endian: str = ">"):
        if endian not in (">", "<"):
            raise ValueError(f'Invalid endian: "{endian}". Use ">" or "<".')
        self.stream = stream
        self.endian = endian

    @classmethod
    def from_bytes(cls, data: bytes, endian: str = ">") -> "EndianBinaryReader":
        return cls(io.BytesIO(data), endian)

    @property
    def position(self) -> int:
        return self.stream.tell()

    @position.setter
    def position(self, value: int):
        if value < 0:
            raise TruncatedDataError(f"Cannot seek to negative offset {value}.")
        self.stream.seek(value)

    @property
    def length(self) -> int:
        current = self.stream.tell()
        self.stream.seek(0, os.SEEK_END)
        end = self.stream.tell()
        self.stream.seek(current)
        return end

    def seek(self, position: int):
        self.position = position

    def align(self, alignment: int):
        """Skips padding up to the next multiple of `alignment`."""
        remainder = self.position % alignment
        if remainder:
            self.position = self.position + alignment - remainder

    def read_bytes(self, count: int) -> bytes:
        if count < 0:
            raise InvalidFormatError(f"Invalid read length {count} at offset {self.position}.")
        start = self.position
        data = self.stream.read(count)
        if len(data) != count:
            raise TruncatedDataError(f"Unexpected end of data at offset {start}: expected {count} bytes, got {len(data)}.")
        return data

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(self.endian + fmt, self.read_bytes(size))[0]

    def read_u8(self) -> int:
        return self._unpack("B")

    def read_u16(self) -> int:
        return self._unpack("H")

    def read_u32(self) -> int:
        return self._unpack("I")

    def read_i32(self) -> int:
        return self._unpack("i")

    def read_i64(self) -> int:
        return self._unpack("q")

    def read_u64(self) -> int:
        return self._unpack("Q")

    def read_cstr(self, encoding: str = STRING_ENCODING) -> str:
        """Reads a null-terminated string; the terminator is consumed."""
        start = self.position
        buffer = bytearray()
        while True:
            chunk = self.stream.read(CSTR_READ_CHUNK)
            if not chunk:
                raise TruncatedDataError(f"Unterminated string starting at offset {start}.")
            terminator = chunk.find(b"\x00")
            if terminator >= 0:
                buffer += chunk[:terminator]
                break
            buffer += chunk
        self.stream.seek(start + len(buffer) + 1)
        try:
            return buffer.decode(encoding)
        except UnicodeDecodeError as e:
            raise InvalidFormatError(f"Invalid string at offset {start}: {e}") from e


# --- Main Class ---
class UnityBundle:
    """
    Represents a UnityFS asset bundle opened for reading.

    The bundle owns one file handle from open() until close(). Entry
    reconstruction moves the shared file cursor, so a single instance must not
    be used from several threads at once.
    """

    def __init__(self, filename: str):
        """Initializes the UnityBundle object."""
        if not filename:
            raise ValueError("Filename cannot be empty.")
        self.filename: str = filename
        self._file: Optional[BinaryIO] = None
        self._reader: Optional[EndianBinaryReader] = None
        self._header: Optional[BundleHeader] = None
        self._blocks: Tuple[StorageBlock, ...] = ()
        self._directory: Tuple[DirectoryEntry, ...] = ()
        self._index: Dict[str, DirectoryEntry] = {}
        self._compression: CompressionType = CompressionType.NONE
        self._data_offset: int = 0

    def open(self) -> "UnityBundle":
        """Opens the bundle file and decodes its header and metadata table."""
        if self.is_open:
            return self

        if not os.path.exists(self.filename):
            raise FileNotFoundError(f'File not found: "{self.filename}"')

        try:
            self._file = open(self.filename, "rb")
            self._reader = EndianBinaryReader(self._file)
            self._read_header()
            if self._header.signature == BUNDLE_SIGNATURE:
                self._read_blocks_info_and_directory()
            else:
                logger.warning('Unsupported bundle signature "%s" in "%s"; treating as empty.', self._header.signature, self.filename)
        except (IOError, OSError) as e:
            self.close()
            raise UnityBundleError(f'Failed to open "{self.filename}": {e}') from e
        except Exception:
            self.close()
            raise

        return self

    def close(self):
        """Releases the file handle and drops the parsed tables. Safe to call twice."""
        try:
            if self._file and not self._file.closed:
                self._file.close()
        finally:
            self._file = None
            self._reader = None
            self._header = None
            self._blocks = ()
            self._directory = ()
            self._index = {}
            self._compression = CompressionType.NONE
            self._data_offset = 0

    def __enter__(self) -> "UnityBundle":
        """Enter the runtime context."""
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the runtime context."""
        self.close()

    @property
    def is_open(self) -> bool:
        return self._file is not None and not self._file.closed

    def _ensure_open(self):
        if not self.is_open:
            raise BundleClosedError(f'Bundle "{self.filename}" is closed.')

    # --- Internal Header/Table Handling ---
    def _read_header(self):
        """Reads the fixed part of the header, plus the UnityFS fields when the signature matches."""
        reader = self._reader
        signature = reader.read_cstr()
        version = reader.read_u32()
        unity_version = reader.read_cstr()
        unity_revision = reader.read_cstr()

        if signature != BUNDLE_SIGNATURE:
            self._header = BundleHeader(signature, version, unity_version, unity_revision)
            return

        size = reader.read_i64()
        compressed_blocks_info_size = reader.read_u32()
        uncompressed_blocks_info_size = reader.read_u32()
        flags = reader.read_u32()
        self._header = BundleHeader(signature, version, unity_version, unity_revision, size, compressed_blocks_info_size, uncompressed_blocks_info_size, flags)

        file_length = reader.length
        if size != file_length:
            logger.warning('Header size %d does not match file length %d for "%s".', size, file_length, self.filename)
        logger.debug("Header: version=%d unity=%s/%s flags=0x%X", version, unity_version, unity_revision, flags)

    def _read_blocks_info_and_directory(self):
        """Locates, decompresses and parses the blocks table and the directory."""
        reader = self._reader
        header = self._header

        if header.version >= ALIGNMENT_MIN_VERSION:
            reader.align(BLOCKS_INFO_ALIGNMENT)

        if header.flags & FLAG_BLOCKS_INFO_AT_END:
            position = reader.position
            table_offset = reader.length - header.compressed_blocks_info_size
            if table_offset < position:
                raise InvalidFormatError(f"Blocks info size {header.compressed_blocks_info_size} overlaps the header.")
            reader.position = table_offset
            blocks_info_bytes = reader.read_bytes(header.compressed_blocks_info_size)
            reader.position = position
        else:
            blocks_info_bytes = reader.read_bytes(header.compressed_blocks_info_size)
        data_offset = reader.position

        compression = CompressionType.from_flags(header.flags)
        if compression is CompressionType.UNSUPPORTED:
            raise UnsupportedCompressionError(f"Unsupported compression code {header.flags & FLAG_COMPRESSION_MASK} in bundle flags 0x{header.flags:X}.")
        if compression is CompressionType.NONE:
            if len(blocks_info_bytes) != header.uncompressed_blocks_info_size:
                logger.warning("Uncompressed blocks info is %d bytes, header declares %d.", len(blocks_info_bytes), header.uncompressed_blocks_info_size)
            table = blocks_info_bytes
        else:
            table = decompress_block(blocks_info_bytes, header.uncompressed_blocks_info_size, compression)

        blocks, directory = self._parse_blocks_info(EndianBinaryReader.from_bytes(table))

        index: Dict[str, DirectoryEntry] = {}
        for entry in directory:
            if entry.path in index:
                logger.warning('Duplicate entry path "%s"; lookups return the first occurrence.', entry.path)
                continue
            index[entry.path] = entry

        self._compression = compression
        self._data_offset = data_offset
        self._blocks = blocks
        self._directory = directory
        self._index = index
        logger.debug("Parsed %d blocks and %d entries (%s, data at %d).", len(blocks), len(directory), compression.value, data_offset)

    @staticmethod
    def _parse_blocks_info(table_reader: EndianBinaryReader) -> Tuple[Tuple[StorageBlock, ...], Tuple[DirectoryEntry, ...]]:
        table_reader.read_bytes(CONTENT_HASH_SIZE)

        block_count = table_reader.read_i32()
        if block_count < 0:
            raise InvalidFormatError(f"Negative block count: {block_count}.")
        blocks = []
        compressed_offset = 0
        for _ in range(block_count):
            uncompressed_size = table_reader.read_u32()
            compressed_size = table_reader.read_u32()
            flags = table_reader.read_u16()
            blocks.append(StorageBlock(compressed_offset, compressed_size, uncompressed_size, flags))
            compressed_offset += compressed_size

        entry_count = table_reader.read_i32()
        if entry_count < 0:
            raise InvalidFormatError(f"Negative entry count: {entry_count}.")
        directory = []
        for _ in range(entry_count):
            offset = table_reader.read_i64()
            size = table_reader.read_i64()
            flags = table_reader.read_u32()
            path = table_reader.read_cstr()
            if offset < 0 or size < 0:
                raise InvalidFormatError(f'Invalid position for entry "{path}" (Offset: {offset}, Size: {size}).')
            directory.append(DirectoryEntry(offset, size, flags, path))

        return tuple(blocks), tuple(directory)

    # --- Entry Reconstruction ---
    def _read_block(self, block: StorageBlock) -> bytes:
        self._reader.position = self._data_offset + block.compressed_offset
        compressed = self._reader.read_bytes(block.compressed_size)
        return decompress_block(compressed, block.uncompressed_size, self._compression)

    def _reconstruct(self, entry: DirectoryEntry) -> io.BytesIO:
        """Assembles an entry from the blocks that cover its range in entry space."""
        output = io.BytesIO()
        total = sum(block.uncompressed_size for block in self._blocks)
        if entry.offset + entry.size > total:
            raise InvalidFormatError(f'Entry "{entry.path}" (Offset: {entry.offset}, Size: {entry.size}) extends past the block data ({total} bytes).')
        if entry.size == 0:
            return output

        consumed = 0
        written = 0
        for block in self._blocks:
            if written == 0 and consumed + block.uncompressed_size <= entry.offset:
                consumed += block.uncompressed_size
                continue

            data = self._read_block(block)
            begin = max(0, entry.offset - consumed) if written == 0 else 0
            end = max(0, block.uncompressed_size - begin - (entry.size - written))
            output.write(data[begin : block.uncompressed_size - end])
            written = output.tell()
            consumed += block.uncompressed_size
            if written >= entry.size:
                break

        if written != entry.size:
            raise InvalidFormatError(f'Entry "{entry.path}" (Offset: {entry.offset}, Size: {entry.size}) extends past the block data ({consumed} bytes).')

        output.seek(0)
        return output

    # --- Public API Methods ---
    @property
    def header(self) -> BundleHeader:
        self._ensure_open()
        return self._header

    @property
    def blocks(self) -> Tuple[StorageBlock, ...]:
        self._ensure_open()
        return self._blocks

    @property
    def directory(self) -> Tuple[DirectoryEntry, ...]:
        self._ensure_open()
        return self._directory

    @property
    def compression(self) -> CompressionType:
        self._ensure_open()
        return self._compression

    def list_entries(self) -> List[str]:
        """Returns the entry paths in directory order."""
        self._ensure_open()
        return [entry.path for entry in self._directory]

    def get_entry_info(self, entry_name: str) -> Optional[Dict[str, Any]]:
        """Returns the directory fields of an entry as a dictionary, or None."""
        self._ensure_open()
        entry = self._index.get(entry_name)
        if entry is None:
            return None
        return entry._asdict()

    def open_asset(self, entry_name: str) -> Optional[io.BytesIO]:
        """
        Reconstructs an entry's bytes.

        Only the blocks overlapping the entry are read and decompressed, each
        exactly once.

        Returns:
            A BytesIO positioned at 0 holding exactly the entry's bytes, or None
            if no entry has that path.
        """
        self._ensure_open()
        entry = self._index.get(entry_name)
        if entry is None:
            return None
        try:
            return self._reconstruct(entry)
        except (IOError, OSError) as e:
            raise UnityBundleError(f'I/O error reading data for "{entry_name}": {e}') from e

    def extract_data(self, entry_name: str) -> bytes:
        """Extracts entry data as bytes."""
        stream = self.open_asset(entry_name)
        if stream is None:
            raise EntryNotFoundError(f'Entry not found: "{entry_name}"')
        return stream.getvalue()

    def extract_stream(self, entry_name: str, target_stream: BinaryIO):
        """Extracts entry data into a writable binary stream."""
        if not hasattr(target_stream, "write"):
            raise TypeError("Target stream object must have a 'write' method.")
        stream = self.open_asset(entry_name)
        if stream is None:
            raise EntryNotFoundError(f'Entry not found: "{entry_name}"')
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            target_stream.write(chunk)

    def extract_file(self, entry_name: str, destination_path: str):
        """Extracts an entry to the local filesystem."""
        self._ensure_open()
        if entry_name not in self._index:
            raise EntryNotFoundError(f'Entry not found: "{entry_name}"')

        dest_dir = os.path.dirname(destination_path)
        try:
            if dest_dir:
                os.makedirs(dest_dir, exist_ok=True)
            with open(destination_path, "wb") as f_out:
                self.extract_stream(entry_name, f_out)
        except (IOError, OSError) as e:
            raise UnityBundleError(f'Failed to write extracted file to "{destination_path}": {e}') from e

    def extract_all(self, destination_folder: str) -> Tuple[int, int]:
        """
        Extracts every entry into the specified folder.

        Entry paths that are absolute or climb out of the folder are refused.

        Returns:
            A tuple `(extracted_count, failed_count)`.
        """
        self._ensure_open()
        os.makedirs(destination_folder, exist_ok=True)
        extracted_count = 0
        failed_count = 0
        print(f'Extracting all entries to "{destination_folder}"...')

        for entry_name in self._index:
            target_path = resolve_extract_path(destination_folder, entry_name)
            if target_path is None:
                print(f'  -> Refusing to extract "{entry_name}" outside of "{destination_folder}".')
                failed_count += 1
                continue
            try:
                print(f"  Extracting: {entry_name} -> {target_path}")
                self.extract_file(entry_name, target_path)
                extracted_count += 1
            except UnityBundleError as e:
                print(f'  -> Failed to extract "{entry_name}": {e}')
                failed_count += 1

        print(f"Extraction complete. {extracted_count} entries processed, {failed_count} failed.")
        return extracted_count, failed_count

    def test_bundle(self) -> List[Tuple[str, str]]:
        """
        Tests the integrity of the bundle by reconstructing each entry.

        Returns:
            A list of tuples `(entry_name, error_message)` for entries that failed.
            Returns an empty list if all entries are okay.
        """
        self._ensure_open()
        failed_entries: List[Tuple[str, str]] = []
        for entry_name in self._index:
            try:
                self.open_asset(entry_name)
            except UnityBundleError as e:
                failed_entries.append((entry_name, f"{type(e).__name__}: {e}"))
        return failed_entries
