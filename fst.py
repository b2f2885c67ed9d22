"""
fst.py - GameCube File System Table reader

Decodes the FST of a GameCube disc image, rebuilds the directory path of
every entry, expands nested .tgc containers into the same flat file list,
and copies byte ranges out of the image.

All offsets in the returned file list are absolute offsets into the outer
disc image, including files that live inside (possibly nested) containers.
"""

import os
import struct
import sys
from collections import namedtuple

# =============================================================================
# Constants
# =============================================================================

DISC_FST_OFFSET = 0x0424
FST_ENTRY_SIZE = 12

FST_TYPE_FILE = 0
FST_TYPE_DIR = 1

CONTAINER_MAGIC = b"\xae\x0f\x38\xa2"
CONTAINER_EXTENSIONS = (".tgc",)
CONTAINER_FST_OFFSET = 0x10
CONTAINER_FILE_AREA = 0x24
CONTAINER_VIRTUAL_FILE_AREA = 0x34
MAX_CONTAINER_DEPTH = 8

CHUNK_SIZE = 0x20000
NAME_READ_SIZE = 64

WELL_KNOWN_FILES = {
    "zlp_f.n64": "TLoZ-OoT-GC.z64",
    "urazlp_f.n64": "TLoZ-OoT-MQ-GC.z64",
}


# =============================================================================
# Errors
# =============================================================================

class FSTError(Exception):
    pass


class TruncatedFSTError(FSTError):
    pass


class ShortReadError(FSTError):
    pass


# =============================================================================
# Data structures
# =============================================================================

class FSTEntry:
    __slots__ = ("position", "kind", "name_offset", "name", "file_offset",
                 "size", "parent_dir_pos", "next_dir_pos", "owner", "path",
                 "full_name")

    def __init__(self, position, kind, name_offset, parent_dir_pos=0,
                 file_offset=0, size=0, next_dir_pos=0, owner=""):
        self.position = position
        self.kind = kind
        self.name_offset = name_offset
        self.name = None
        self.file_offset = file_offset
        self.size = size
        self.parent_dir_pos = parent_dir_pos
        self.next_dir_pos = next_dir_pos
        self.owner = owner
        self.path = None
        self.full_name = None

    @property
    def is_dir(self):
        return self.kind == FST_TYPE_DIR

    def __repr__(self):
        if self.is_dir:
            return f"<FSTEntry #{self.position} dir {self.full_name or self.name!r}>"
        return (f"<FSTEntry #{self.position} file {self.full_name or self.name!r} "
                f"@0x{self.file_offset:08x} {self.size} bytes>")


ListedFile = namedtuple("ListedFile", "file_offset size name full_name")


# =============================================================================
# Byte reading helpers
# =============================================================================

def read_be24(data, offset=0):
    hi, lo = struct.unpack_from(">BH", data, offset)
    return (hi << 16) | lo


def read_be32(data, offset=0):
    return struct.unpack_from(">I", data, offset)[0]


def read_exact(fp, size, what="data"):
    buf = fp.read(size)
    if len(buf) < size:
        raise TruncatedFSTError(
            f"Truncated {what}: expected {size} bytes at 0x{fp.tell() - len(buf):x}, "
            f"got {len(buf)}")
    return buf


def read_cstring(fp, offset):
    """Read a NUL-terminated ASCII string starting at offset, non-ASCII bytes as "?"."""
    fp.seek(offset)
    raw = bytearray()
    while True:
        chunk = fp.read(NAME_READ_SIZE)
        if not chunk:
            raise TruncatedFSTError(
                f"Truncated string table: name at 0x{offset:x} has no terminator")
        end = chunk.find(b"\x00")
        if end >= 0:
            raw += chunk[:end]
            break
        raw += chunk
    return bytes(b if b < 0x80 else 0x3F for b in raw).decode("ascii")


# =============================================================================
# FST decoding
# =============================================================================

def decode_fst(fp, fst_start, offset_shift=0, owner=""):
    """Decode the FST records starting at fst_start.

    Returns the non-root entries in record order with their names read from
    the string table. Paths are left unresolved, see resolve_paths().
    """
    fp.seek(fst_start)
    root = read_exact(fp, FST_ENTRY_SIZE, "FST root entry")
    entry_count = read_be32(root, 8)

    entries = []
    current_dir = 0
    for i in range(1, entry_count):
        raw = read_exact(fp, FST_ENTRY_SIZE, f"FST entry {i}")
        kind = raw[0]
        name_offset = read_be24(raw, 1)

        if kind == FST_TYPE_DIR:
            current_dir = i
            entry = FSTEntry(i, kind, name_offset,
                             parent_dir_pos=read_be32(raw, 4),
                             next_dir_pos=read_be32(raw, 8),
                             owner=owner)
        elif kind == FST_TYPE_FILE:
            file_offset = read_be32(raw, 4) + offset_shift
            if file_offset < 0:
                raise FSTError(
                    f"FST entry {i}: file offset {file_offset} is negative after shift")
            entry = FSTEntry(i, kind, name_offset,
                             parent_dir_pos=current_dir,
                             file_offset=file_offset,
                             size=read_be32(raw, 8),
                             owner=owner)
        else:
            raise FSTError(f"FST entry {i}: unknown entry type 0x{kind:02x}")
        entries.append(entry)

    string_table = fp.tell()
    for entry in entries:
        entry.name = read_cstring(fp, string_table + entry.name_offset)

    return entries


# =============================================================================
# Path resolution
# =============================================================================

def parent_entry(entries, entry, parent_pos):
    if not 0 < parent_pos <= len(entries):
        raise FSTError(
            f"FST entry {entry.position} ({entry.name}): parent {parent_pos} "
            f"out of range 1..{len(entries)}")
    parent = entries[parent_pos - 1]
    if not parent.is_dir:
        raise FSTError(
            f"FST entry {entry.position} ({entry.name}): parent {parent_pos} "
            f"is not a directory")
    return parent


def build_path(entries, first):
    """Walk the parent chain of first up to the root, return "/a/b/"."""
    parts = ["/"]
    node = first
    while node.parent_dir_pos != 0:
        if node.parent_dir_pos >= node.position:
            raise FSTError(
                f"FST entry {node.position} ({node.name}): parent "
                f"{node.parent_dir_pos} is not before the entry")
        node = parent_entry(entries, node, node.parent_dir_pos)
        parts[:0] = ["/", node.name]
    return "".join(parts)


def resolve_paths(entries):
    """Assign path and full_name to every entry, in place."""
    groups = {}
    for entry in entries:
        groups.setdefault(entry.parent_dir_pos, []).append(entry)

    for members in groups.values():
        path = build_path(entries, members[0])
        for entry in members:
            entry.path = path

    for entry in entries:
        entry.full_name = entry.owner + entry.path + entry.name
        if entry.is_dir:
            entry.full_name += "/"

    return entries


def read_fst(fp, fst_start, offset_shift=0, owner=""):
    return resolve_paths(decode_fst(fp, fst_start, offset_shift, owner))


# =============================================================================
# Nested containers
# =============================================================================

def is_container_name(name):
    return name.lower().endswith(CONTAINER_EXTENSIONS)


def read_container(fp, container, depth=0, verbose=False, active=frozenset()):
    """Return the files stored inside a .tgc container entry.

    An entry without the container signature contributes nothing.
    active holds the offsets of the containers enclosing this one.
    """
    base = container.file_offset
    fp.seek(base)
    if fp.read(len(CONTAINER_MAGIC)) != CONTAINER_MAGIC:
        return []

    fp.seek(base)
    header = read_exact(fp, CONTAINER_VIRTUAL_FILE_AREA + 4,
                        f"container header of {container.full_name}")
    fst_start = read_be32(header, CONTAINER_FST_OFFSET) + base
    file_area = read_be32(header, CONTAINER_FILE_AREA)
    virtual_file_area = read_be32(header, CONTAINER_VIRTUAL_FILE_AREA)
    offset_shift = (file_area - virtual_file_area) + base

    if verbose:
        print(f"  Container {container.full_name}: FST at 0x{fst_start:x}, "
              f"shift {offset_shift:+#x}")

    nested = read_fst(fp, fst_start, offset_shift, container.full_name)
    return expand_containers(fp, nested, depth + 1, verbose, active | {base})


def expand_containers(fp, entries, depth=0, verbose=False, active=frozenset()):
    """Flatten entries into a file list with container contents merged in.

    Files found inside a container precede the container itself. A
    container at the offset of one it is nested in is not expanded again.
    """
    files = []
    for entry in entries:
        if entry.is_dir:
            continue
        if is_container_name(entry.name):
            if entry.file_offset in active:
                print(f"Warning: {entry.full_name}: container refers back to "
                      f"0x{entry.file_offset:x}, not expanded", file=sys.stderr)
            elif depth >= MAX_CONTAINER_DEPTH:
                print(f"Warning: {entry.full_name}: containers nested deeper than "
                      f"{MAX_CONTAINER_DEPTH}, not expanded", file=sys.stderr)
            else:
                files.extend(read_container(fp, entry, depth, verbose, active))
        files.append(entry)
    return files


# =============================================================================
# Disc image
# =============================================================================

def read_disc_fst_offset(fp):
    fp.seek(DISC_FST_OFFSET)
    return read_be32(read_exact(fp, 4, "disc header"))


def read_disc(fp, verbose=False):
    """Return the flat file list of a disc image, containers expanded."""
    fst_start = read_disc_fst_offset(fp)
    entries = read_fst(fp, fst_start)
    if verbose:
        print(f"FST at 0x{fst_start:x}: {len(entries)} entries")
    return expand_containers(fp, entries, verbose=verbose)


# =============================================================================
# Listing
# =============================================================================

def list_files(files):
    listed = [ListedFile(e.file_offset, e.size, e.name, e.full_name)
              for e in files if not e.is_dir]
    listed.sort(key=lambda f: f.file_offset)
    return listed


# =============================================================================
# Extraction
# =============================================================================

def split_file(fp, out_path, start, size):
    """Copy size bytes at start into a new file at out_path.

    Never overwrites: raises FileExistsError if out_path exists. Raises
    ShortReadError, leaving no output behind, if the source ends early.
    """
    remaining = size
    with open(out_path, "xb") as out:
        fp.seek(start)
        while remaining > 0:
            chunk = fp.read(min(remaining, CHUNK_SIZE))
            if not chunk:
                break
            out.write(chunk)
            remaining -= len(chunk)

    if remaining:
        os.remove(out_path)
        raise ShortReadError(
            f"{out_path}: source ended after {size - remaining} of {size} bytes "
            f"(range 0x{start:x}+0x{size:x})")
    return size


def check_output_name(entry, out_name):
    """Reject names that would not land directly inside the output directory."""
    seps = [s for s in (os.sep, os.altsep, "/") if s]
    if (not out_name or out_name in (".", "..") or os.path.isabs(out_name)
            or any(s in out_name for s in seps)):
        raise FSTError(f"{entry.full_name}: unsafe output name {out_name!r}")


def extract_entries(fp, targets, output_dir, verbose=False):
    for entry, out_name in targets:
        check_output_name(entry, out_name)
    if targets:
        os.makedirs(output_dir, exist_ok=True)
    written = []
    for entry, out_name in targets:
        out_path = os.path.join(output_dir, out_name)
        if verbose:
            print(f"Extracting: {entry.full_name} -> {out_path} ({entry.size} bytes)")
        split_file(fp, out_path, entry.file_offset, entry.size)
        written.append(out_path)
    return written


def extract_matching(fp, files, pattern, output_dir, verbose=False):
    """Extract every file whose full name contains pattern.

    Files are written under their base name. Returns the written paths;
    an empty list means nothing matched.
    """
    targets = [(e, e.name) for e in files
               if not e.is_dir and pattern in e.full_name]
    return extract_entries(fp, targets, output_dir, verbose)


def extract_well_known(fp, files, output_dir, verbose=False):
    targets = [(e, WELL_KNOWN_FILES[e.name]) for e in files
               if not e.is_dir and e.name in WELL_KNOWN_FILES]
    return extract_entries(fp, targets, output_dir, verbose)
