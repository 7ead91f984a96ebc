#!/usr/bin/env python3
"""
mesh_transcoder.py
==================

Pure Python transcoder for versioned binary mesh assets. Meshes tagged
"version 3.00/3.01" and "version 4.00/4.01" (optionally skinned) are decoded
and re-encoded into the canonical, unskinned, LOD-flattened "version 2.00"
layout. Meshes tagged 1.00, 1.01 or 2.00 are already canonical and are passed
through untouched.

On-disk layout of every supported version:

    b"version X.XX\\n"   13 bytes of text
    header              version-specific, little-endian
    vertices            vertex_count * vertex_record_size (40, or 48 with trailing bytes)
    envelopes           vertex_count * 8 bytes (4.xx with bone_count > 0 only)
    faces               face_count * 12 bytes
    lods                lod_count * lod_entry_size bytes

Usage:
    python3 mesh_transcoder.py \\
        --input assets/meshes \\
        --output-root assets/meshes_v2 \\
        --report assets/reports/mesh_report.json \\
        --verbose
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import struct
import sys
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from functools import partial
from pathlib import Path
from typing import Callable, ClassVar, Dict, List, Optional, Tuple, TypeVar, Union

import numpy as np


class MeshParseError(Exception):
    pass


class TruncatedInputError(MeshParseError):
    pass


class StructuralMismatchError(MeshParseError):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERSION_PREAMBLE_SIZE = 8   # b"version "
VERSION_TAG_SIZE = 4        # b"3.00"
VERSION_LINE_SIZE = 13      # b"version 3.00\n"

CANONICAL_VERSION_LINE = b"version 2.00\n"

# Record sizes (packed, on-disk)
SIZEOF_VERTEX = 40                  # float Pos[3] + Normal[3] + UV[2] + i8 Tangent[4] + u8 RGBA[4]
VERTEX_RECORD_SIZES = (40, 48)      # 48-byte records carry 8 trailing bytes after the fields
SIZEOF_FACE = 12                    # u32 a, b, c
SIZEOF_ENVELOPE = 8                 # u8 Bones[4] + u8 Weights[4]
SIZEOF_HEADER_V2 = 12
SIZEOF_HEADER_V3 = 16
SIZEOF_HEADER_V4 = 24
SIZEOF_HEADER_V4_SEQUENTIAL = 27    # sum of field widths when face/lod sizes are stored
SIZEOF_LOD_V4 = 4                   # v4 stores LOD offsets as u32
LOD_ENTRY_SIZES = (2, 4)

# Header decode strategies for version 4.xx. "fixed" reads the 24-byte record
# the format declares; "sequential" also reads face_record_size/lod_entry_size
# and advances by the 27 bytes those fields occupy.
V4_LAYOUT_FIXED = "fixed"
V4_LAYOUT_SEQUENTIAL = "sequential"
V4_LAYOUTS = (V4_LAYOUT_FIXED, V4_LAYOUT_SEQUENTIAL)

ROUTE_PASS_THROUGH = "pass_through"
ROUTE_V3 = "v3"
ROUTE_V4 = "v4"
ROUTE_UNSUPPORTED = "unsupported"

VERSION_ROUTES: Dict[str, str] = {
    "1.00": ROUTE_PASS_THROUGH,
    "1.01": ROUTE_PASS_THROUGH,
    "2.00": ROUTE_PASS_THROUGH,
    "3.00": ROUTE_V3,
    "3.01": ROUTE_V3,
    "4.00": ROUTE_V4,
    "4.01": ROUTE_V4,
}

FAILURE_TRUNCATED = "truncated_input"
FAILURE_STRUCTURAL = "structural_mismatch"

MESH_SUFFIX = ".mesh"

_U8 = struct.Struct("<B")
_I8 = struct.Struct("<b")
_U16 = struct.Struct("<H")
_I16 = struct.Struct("<h")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_F32 = struct.Struct("<f")

_VERTEX_STRUCT = struct.Struct("<8f4b4B")
_FACE_STRUCT = struct.Struct("<3I")
_HEADER_V2_STRUCT = struct.Struct("<HBBII")

# ---------------------------------------------------------------------------
# Binary cursor
# ---------------------------------------------------------------------------


class BinaryCursor:
    """Sequential little-endian reader over an in-memory byte buffer.

    Every read advances the position by the width of the type. Reads and
    seeks outside ``[0, len(data)]`` raise ``TruncatedInputError`` and leave
    the position untouched.
    """

    def __init__(self, data: bytes, position: int = 0) -> None:
        self._data = data
        self._position = 0
        self.seek(position)

    def __len__(self) -> int:
        return len(self._data)

    def tell(self) -> int:
        return self._position

    def remaining(self) -> int:
        return len(self._data) - self._position

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            target = offset
        elif whence == os.SEEK_CUR:
            target = self._position + offset
        else:
            raise ValueError(f"Unsupported whence: {whence}")
        if target < 0 or target > len(self._data):
            raise TruncatedInputError(
                f"Unexpected end of input: seek to {target} outside buffer of {len(self._data)} bytes"
            )
        self._position = target
        return target

    def require(self, size: int, what: str) -> None:
        if size > self.remaining():
            raise TruncatedInputError(
                f"Unexpected end of input: {what} needs {size} bytes at offset "
                f"{self._position}, have {self.remaining()}"
            )

    def _unpack(self, fmt: struct.Struct):
        self.require(fmt.size, fmt.format)
        value = fmt.unpack_from(self._data, self._position)[0]
        self._position += fmt.size
        return value

    def read_bytes(self, size: int) -> bytes:
        self.require(size, f"{size}-byte block")
        chunk = bytes(self._data[self._position:self._position + size])
        self._position += size
        return chunk

    def read_u8(self) -> int:
        return self._unpack(_U8)

    def read_i8(self) -> int:
        return self._unpack(_I8)

    def read_u16(self) -> int:
        return self._unpack(_U16)

    def read_i16(self) -> int:
        return self._unpack(_I16)

    def read_u32(self) -> int:
        return self._unpack(_U32)

    def read_i32(self) -> int:
        return self._unpack(_I32)

    def read_f32(self) -> float:
        return self._unpack(_F32)


# ---------------------------------------------------------------------------
# Mesh data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Vertex:
    position: Tuple[float, float, float]
    normal: Tuple[float, float, float]
    uv: Tuple[float, float]
    tangent: Tuple[int, int, int, int]      # x, y, z, bitangent sign
    color: Tuple[int, int, int, int] = (255, 255, 255, 255)
    trailing: bytes = b""

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor, record_size: int = SIZEOF_VERTEX) -> "Vertex":
        px = cursor.read_f32()
        py = cursor.read_f32()
        pz = cursor.read_f32()
        nx = cursor.read_f32()
        ny = cursor.read_f32()
        nz = cursor.read_f32()
        tu = cursor.read_f32()
        tv = cursor.read_f32()
        tx = cursor.read_i8()
        ty = cursor.read_i8()
        tz = cursor.read_i8()
        ts = cursor.read_i8()
        r = cursor.read_u8()
        g = cursor.read_u8()
        b = cursor.read_u8()
        a = cursor.read_u8()
        trailing = cursor.read_bytes(record_size - SIZEOF_VERTEX)
        return cls(
            position=(px, py, pz),
            normal=(nx, ny, nz),
            uv=(tu, tv),
            tangent=(tx, ty, tz, ts),
            color=(r, g, b, a),
            trailing=trailing,
        )

    @property
    def record_size(self) -> int:
        return SIZEOF_VERTEX + len(self.trailing)

    def to_bytes(self) -> bytes:
        return _VERTEX_STRUCT.pack(
            *self.position, *self.normal, *self.uv, *self.tangent, *self.color
        ) + self.trailing


@dataclass(frozen=True)
class Face:
    a: int
    b: int
    c: int

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor) -> "Face":
        a = cursor.read_u32()
        b = cursor.read_u32()
        c = cursor.read_u32()
        return cls(a, b, c)

    def to_bytes(self) -> bytes:
        return _FACE_STRUCT.pack(self.a, self.b, self.c)


@dataclass(frozen=True)
class Envelope:
    bones: Tuple[int, int, int, int]
    weights: Tuple[int, int, int, int]

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor) -> "Envelope":
        bones = tuple(cursor.read_u8() for _ in range(4))
        weights = tuple(cursor.read_u8() for _ in range(4))
        return cls(bones=bones, weights=weights)


@dataclass(frozen=True)
class MeshHeaderV2:
    vertex_count: int
    face_count: int
    header_size: int = SIZEOF_HEADER_V2
    vertex_record_size: int = SIZEOF_VERTEX
    face_record_size: int = SIZEOF_FACE

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor) -> "MeshHeaderV2":
        header_size = cursor.read_u16()
        vertex_record_size = cursor.read_u8()
        face_record_size = cursor.read_u8()
        vertex_count = cursor.read_u32()
        face_count = cursor.read_u32()
        return cls(
            vertex_count=vertex_count,
            face_count=face_count,
            header_size=header_size,
            vertex_record_size=vertex_record_size,
            face_record_size=face_record_size,
        )

    def validate(self) -> None:
        _expect_size("v2 header_size", self.header_size, SIZEOF_HEADER_V2)
        _expect_vertex_record_size("v2 vertex_record_size", self.vertex_record_size)
        _expect_size("v2 face_record_size", self.face_record_size, SIZEOF_FACE)

    def to_bytes(self) -> bytes:
        return _HEADER_V2_STRUCT.pack(
            self.header_size,
            self.vertex_record_size,
            self.face_record_size,
            self.vertex_count,
            self.face_count,
        )


@dataclass(frozen=True)
class MeshHeaderV3:
    header_size: int
    vertex_record_size: int
    face_record_size: int
    lod_entry_size: int
    lod_count: int
    vertex_count: int
    face_count: int

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor) -> "MeshHeaderV3":
        header_size = cursor.read_u16()
        vertex_record_size = cursor.read_u8()
        face_record_size = cursor.read_u8()
        lod_entry_size = cursor.read_u16()
        lod_count = cursor.read_u16()
        vertex_count = cursor.read_u32()
        face_count = cursor.read_u32()
        return cls(
            header_size=header_size,
            vertex_record_size=vertex_record_size,
            face_record_size=face_record_size,
            lod_entry_size=lod_entry_size,
            lod_count=lod_count,
            vertex_count=vertex_count,
            face_count=face_count,
        )

    def validate(self) -> None:
        _expect_size("v3 header_size", self.header_size, SIZEOF_HEADER_V3)
        _expect_vertex_record_size("v3 vertex_record_size", self.vertex_record_size)
        _expect_size("v3 face_record_size", self.face_record_size, SIZEOF_FACE)
        if self.lod_count > 0:
            _expect_lod_entry_size("v3 lod_entry_size", self.lod_entry_size)

    @property
    def lod_stride(self) -> int:
        return self.lod_entry_size


@dataclass(frozen=True)
class MeshHeaderV4:
    header_size: int
    lod_type: int
    vertex_count: int
    face_count: int
    lod_count: int
    bone_count: int
    bone_name_buffer_size: int
    subset_count: int
    high_quality_lod_count: int
    unused: int
    # Only present in the sequential layout.
    face_record_size: Optional[int] = None
    lod_entry_size: Optional[int] = None
    layout: str = V4_LAYOUT_FIXED

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor, layout: str = V4_LAYOUT_FIXED) -> "MeshHeaderV4":
        if layout not in V4_LAYOUTS:
            raise ValueError(f"Unknown v4 header layout: {layout!r}")

        header_size = cursor.read_u16()
        lod_type = cursor.read_u16()
        vertex_count = cursor.read_u32()
        face_count = cursor.read_u32()
        lod_count = cursor.read_u16()
        bone_count = cursor.read_u16()
        bone_name_buffer_size = cursor.read_u32()
        subset_count = cursor.read_u16()

        face_record_size: Optional[int] = None
        lod_entry_size: Optional[int] = None
        if layout == V4_LAYOUT_SEQUENTIAL:
            face_record_size = cursor.read_u8()
            lod_entry_size = cursor.read_u16()

        high_quality_lod_count = cursor.read_u8()
        unused = cursor.read_u8()

        return cls(
            header_size=header_size,
            lod_type=lod_type,
            vertex_count=vertex_count,
            face_count=face_count,
            lod_count=lod_count,
            bone_count=bone_count,
            bone_name_buffer_size=bone_name_buffer_size,
            subset_count=subset_count,
            high_quality_lod_count=high_quality_lod_count,
            unused=unused,
            face_record_size=face_record_size,
            lod_entry_size=lod_entry_size,
            layout=layout,
        )

    def validate(self) -> None:
        _expect_size("v4 header_size", self.header_size, SIZEOF_HEADER_V4)
        if self.layout == V4_LAYOUT_SEQUENTIAL:
            _expect_size("v4 face_record_size", self.face_record_size, SIZEOF_FACE)
            if self.lod_count > 0:
                _expect_lod_entry_size("v4 lod_entry_size", self.lod_entry_size)

    @property
    def face_stride(self) -> int:
        return self.face_record_size if self.face_record_size is not None else SIZEOF_FACE

    @property
    def lod_stride(self) -> int:
        return self.lod_entry_size if self.lod_entry_size is not None else SIZEOF_LOD_V4


MeshHeader = Union[MeshHeaderV3, MeshHeaderV4]


@dataclass
class DecodedMesh:
    version: str
    header: MeshHeader
    vertices: List[Vertex]
    envelopes: List[Envelope]
    faces: List[Face]
    lods: List[int]


# ---------------------------------------------------------------------------
# Transcode outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PassThrough:
    kind: ClassVar[str] = ROUTE_PASS_THROUGH
    version: str


@dataclass(frozen=True)
class Transcoded:
    kind: ClassVar[str] = "transcoded"
    data: bytes
    source_version: str
    vertex_count: int
    face_count: int


@dataclass(frozen=True)
class Unsupported:
    kind: ClassVar[str] = ROUTE_UNSUPPORTED
    tag: str


@dataclass(frozen=True)
class TranscodeFailure:
    kind: ClassVar[str] = "failure"
    reason: str     # FAILURE_TRUNCATED or FAILURE_STRUCTURAL
    detail: str


TranscodeResult = Union[PassThrough, Transcoded, Unsupported, TranscodeFailure]

# ---------------------------------------------------------------------------
# Record decoding
# ---------------------------------------------------------------------------

T = TypeVar("T")


def _expect_size(name: str, declared: Optional[int], expected: int) -> None:
    if declared != expected:
        raise StructuralMismatchError(f"{name} is {declared}, expected {expected}")


def _expect_vertex_record_size(name: str, declared: int) -> None:
    if declared not in VERTEX_RECORD_SIZES:
        raise StructuralMismatchError(
            f"{name} is {declared}, expected one of {VERTEX_RECORD_SIZES}"
        )


def _vertex_reader(record_size: int) -> Callable[[BinaryCursor], Vertex]:
    return partial(Vertex.from_cursor, record_size=record_size)


def _expect_lod_entry_size(name: str, declared: Optional[int]) -> None:
    if declared not in LOD_ENTRY_SIZES:
        raise StructuralMismatchError(
            f"{name} is {declared}, expected one of {LOD_ENTRY_SIZES}"
        )


def _read_records(
    cursor: BinaryCursor,
    decode: Callable[[BinaryCursor], T],
    count: int,
    stride: int,
    what: str,
) -> List[T]:
    """Decode ``count`` records, stepping the cursor by ``stride`` after each."""
    cursor.require(count * stride, f"{count} {what} records")
    records: List[T] = []
    for _ in range(count):
        start = cursor.tell()
        records.append(decode(cursor))
        cursor.seek(start + stride)
    return records


def _lod_entry_reader(stride: int) -> Callable[[BinaryCursor], int]:
    if stride == 2:
        return BinaryCursor.read_u16
    return BinaryCursor.read_u32


def classify_version(raw: bytes) -> Tuple[str, str]:
    """Return ``(route, tag)`` for the version tag stored at offset 8."""
    if len(raw) < VERSION_PREAMBLE_SIZE + VERSION_TAG_SIZE:
        raise TruncatedInputError(
            f"Input too small for version tag ({len(raw)} < "
            f"{VERSION_PREAMBLE_SIZE + VERSION_TAG_SIZE})"
        )
    cursor = BinaryCursor(raw, VERSION_PREAMBLE_SIZE)
    tag_bytes = cursor.read_bytes(VERSION_TAG_SIZE)
    try:
        tag = tag_bytes.decode("ascii")
    except UnicodeDecodeError:
        return ROUTE_UNSUPPORTED, tag_bytes.decode("ascii", errors="backslashreplace")
    return VERSION_ROUTES.get(tag, ROUTE_UNSUPPORTED), tag


def geometry_stats(vertices: List[Vertex]) -> Dict[str, float]:
    """Summarize decoded float attributes (position, normal, uv)."""
    if not vertices:
        return {"vertex_count": 0, "finite_ratio": 1.0, "max_abs_position": 0.0}

    values = np.array(
        [vertex.position + vertex.normal + vertex.uv for vertex in vertices],
        dtype=np.float64,
    )
    finite = np.isfinite(values)
    positions = values[:, :3][np.all(finite[:, :3], axis=1)]
    max_abs_position = float(np.abs(positions).max()) if positions.size else 0.0
    return {
        "vertex_count": len(vertices),
        "finite_ratio": float(finite.mean()),
        "max_abs_position": max_abs_position,
    }


def decode_mesh_v3(raw: bytes, version: str = "3.00") -> DecodedMesh:
    cursor = BinaryCursor(raw)
    cursor.seek(VERSION_LINE_SIZE)

    header = MeshHeaderV3.from_cursor(cursor)
    header.validate()
    cursor.seek(VERSION_LINE_SIZE + header.header_size)
    logging.debug("v%s header: %s", version, header)

    vertices = _read_records(
        cursor, _vertex_reader(header.vertex_record_size), header.vertex_count,
        header.vertex_record_size, "vertex",
    )
    faces = _read_records(
        cursor, Face.from_cursor, header.face_count, header.face_record_size, "face"
    )
    lods = _read_records(
        cursor, _lod_entry_reader(header.lod_stride), header.lod_count, header.lod_stride, "lod"
    )

    logging.debug(
        "Verts: %d Faces: %d Lods: %d", len(vertices), len(faces), len(lods)
    )
    return DecodedMesh(
        version=version,
        header=header,
        vertices=vertices,
        envelopes=[],
        faces=faces,
        lods=lods,
    )


def decode_mesh_v4(
    raw: bytes,
    version: str = "4.00",
    layout: str = V4_LAYOUT_FIXED,
    check_geometry: Optional[bool] = None,
) -> DecodedMesh:
    """Decode a 4.xx mesh under one header layout.

    The non-finite geometry check defaults to on for the ``sequential`` layout
    only, where a wrong layout choice shifts every vertex off its record.
    """
    if check_geometry is None:
        check_geometry = layout == V4_LAYOUT_SEQUENTIAL

    cursor = BinaryCursor(raw)
    cursor.seek(VERSION_LINE_SIZE)

    header = MeshHeaderV4.from_cursor(cursor, layout)
    header.validate()
    consumed = SIZEOF_HEADER_V4 if layout == V4_LAYOUT_FIXED else SIZEOF_HEADER_V4_SEQUENTIAL
    cursor.seek(VERSION_LINE_SIZE + consumed)
    logging.debug("v%s header (%s layout): %s", version, layout, header)

    vertices = _read_records(
        cursor, Vertex.from_cursor, header.vertex_count, SIZEOF_VERTEX, "vertex"
    )
    if check_geometry:
        stats = geometry_stats(vertices)
        if stats["finite_ratio"] < 1.0:
            raise StructuralMismatchError(
                f"Decoded v{version} geometry is malformed under the {layout!r} header "
                f"layout (finite ratio {stats['finite_ratio']:.3f})"
            )

    envelopes: List[Envelope] = []
    if header.bone_count > 0:
        envelopes = _read_records(
            cursor, Envelope.from_cursor, header.vertex_count, SIZEOF_ENVELOPE, "envelope"
        )

    faces = _read_records(
        cursor, Face.from_cursor, header.face_count, header.face_stride, "face"
    )
    lods = _read_records(
        cursor, _lod_entry_reader(header.lod_stride), header.lod_count, header.lod_stride, "lod"
    )

    logging.debug(
        "Verts: %d Envelopes: %d Faces: %d Lods: %d",
        len(vertices), len(envelopes), len(faces), len(lods),
    )
    return DecodedMesh(
        version=version,
        header=header,
        vertices=vertices,
        envelopes=envelopes,
        faces=faces,
        lods=lods,
    )


def probe_v4_layouts(raw: bytes) -> Dict[str, Dict[str, object]]:
    """Decode a 4.xx buffer under every header layout and report the outcome.

    A layout is ``ok`` when decoding succeeds and every float attribute is
    finite. When both layouts are ok on the same file they cannot be told
    apart from that file alone.
    """
    route, tag = classify_version(raw)
    if route != ROUTE_V4:
        raise ValueError(f"Not a version 4 mesh (tag {tag!r})")

    report: Dict[str, Dict[str, object]] = {}
    for layout in V4_LAYOUTS:
        entry: Dict[str, object] = {"layout": layout}
        try:
            mesh = decode_mesh_v4(raw, tag, layout=layout, check_geometry=False)
        except TruncatedInputError as exc:
            entry.update(ok=False, failure=FAILURE_TRUNCATED, detail=str(exc))
        except StructuralMismatchError as exc:
            entry.update(ok=False, failure=FAILURE_STRUCTURAL, detail=str(exc))
        else:
            stats = geometry_stats(mesh.vertices)
            entry.update(stats)
            entry.update(
                ok=stats["finite_ratio"] == 1.0,
                face_count=len(mesh.faces),
                lods=list(mesh.lods),
            )
        report[layout] = entry
    return report


# ---------------------------------------------------------------------------
# LOD reduction + canonical encoding
# ---------------------------------------------------------------------------


def get_base_faces(faces: List[Face], lods: List[int]) -> List[Face]:
    """Keep only the base LOD range ``faces[:lods[1]]`` when a LOD table exists."""
    if len(lods) > 1:
        boundary = lods[1]
        if boundary > len(faces):
            raise StructuralMismatchError(
                f"LOD boundary {boundary} exceeds face count {len(faces)}"
            )
        return faces[:boundary]
    return list(faces)


def construct_v2(vertices: List[Vertex], faces: List[Face]) -> bytes:
    record_size = vertices[0].record_size if vertices else SIZEOF_VERTEX
    if any(vertex.record_size != record_size for vertex in vertices):
        raise ValueError("Vertices must share one record size")
    header = MeshHeaderV2(
        vertex_count=len(vertices),
        face_count=len(faces),
        vertex_record_size=record_size,
    )
    logging.debug("v2 header: %s", header)

    out = bytearray(CANONICAL_VERSION_LINE)
    out += header.to_bytes()
    for vertex in vertices:
        out += vertex.to_bytes()
    for face in faces:
        out += face.to_bytes()
    return bytes(out)


def parse_v2(raw: bytes) -> Tuple[MeshHeaderV2, List[Vertex], List[Face]]:
    """Decode a canonical "version 2.00" buffer."""
    if raw[:VERSION_LINE_SIZE] != CANONICAL_VERSION_LINE:
        raise StructuralMismatchError(
            f"Not a canonical v2 mesh (prefix {bytes(raw[:VERSION_LINE_SIZE])!r})"
        )
    cursor = BinaryCursor(raw, VERSION_LINE_SIZE)
    header = MeshHeaderV2.from_cursor(cursor)
    header.validate()
    vertices = _read_records(
        cursor, _vertex_reader(header.vertex_record_size), header.vertex_count,
        header.vertex_record_size, "vertex",
    )
    faces = _read_records(cursor, Face.from_cursor, header.face_count, SIZEOF_FACE, "face")
    return header, vertices, faces


def try_transcode(raw: bytes, v4_layout: str = V4_LAYOUT_FIXED) -> TranscodeResult:
    """Transcode a 3.xx/4.xx mesh into canonical v2 bytes.

    Returns ``PassThrough`` for already-canonical meshes, ``Unsupported`` for
    unknown tags and ``TranscodeFailure`` for truncated or malformed input.
    Never returns partial output.
    """
    if v4_layout not in V4_LAYOUTS:
        raise ValueError(f"Unknown v4 header layout: {v4_layout!r}")

    try:
        route, tag = classify_version(raw)
    except TruncatedInputError as exc:
        return TranscodeFailure(reason=FAILURE_TRUNCATED, detail=str(exc))

    if route == ROUTE_PASS_THROUGH:
        logging.debug("Mesh version %s is already canonical", tag)
        return PassThrough(version=tag)
    if route == ROUTE_UNSUPPORTED:
        logging.warning("Unsupported mesh version %s", tag)
        return Unsupported(tag=tag)

    start_time = time.perf_counter()
    try:
        if route == ROUTE_V3:
            mesh = decode_mesh_v3(raw, tag)
        else:
            mesh = decode_mesh_v4(raw, tag, layout=v4_layout)
        faces = get_base_faces(mesh.faces, mesh.lods)
    except TruncatedInputError as exc:
        return TranscodeFailure(reason=FAILURE_TRUNCATED, detail=str(exc))
    except StructuralMismatchError as exc:
        return TranscodeFailure(reason=FAILURE_STRUCTURAL, detail=str(exc))

    data = construct_v2(mesh.vertices, faces)
    logging.debug(
        "Transcoded v%s -> v2.00 (%d verts, %d/%d faces) in %.2fms",
        tag, len(mesh.vertices), len(faces), len(mesh.faces),
        (time.perf_counter() - start_time) * 1000.0,
    )
    return Transcoded(
        data=data,
        source_version=tag,
        vertex_count=len(mesh.vertices),
        face_count=len(faces),
    )


# ---------------------------------------------------------------------------
# Batch conversion
# ---------------------------------------------------------------------------

@dataclass
class ConversionStats:
    total_found: int = 0
    converted: int = 0
    passed_through: int = 0
    skipped_existing: int = 0
    unsupported: int = 0
    truncated: int = 0
    structural: int = 0
    failed: int = 0
    failures: List[Dict] = field(default_factory=list)


def merge_stats(target: ConversionStats, source: ConversionStats) -> None:
    """Merge *source* into *target* by summing int fields and extending list fields."""
    for f in dataclass_fields(ConversionStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)


def discover_mesh_files(root: Path) -> List[Path]:
    if root.is_file():
        return [root]
    return sorted(
        path for path in root.rglob("*")
        if path.is_file() and path.suffix.lower() == MESH_SUFFIX
    )


def output_path_for(source: Path, input_root: Path, output_root: Path) -> Path:
    if input_root.is_file():
        return output_root / source.with_suffix(MESH_SUFFIX).name
    return output_root / source.relative_to(input_root).with_suffix(MESH_SUFFIX)


def convert_single_mesh(
    source: Path,
    output_path: Path,
    force: bool,
    v4_layout: str,
    stats: ConversionStats,
) -> None:
    """Transcode a single mesh file into canonical v2."""
    stats.total_found += 1

    if not force and output_path.exists():
        stats.skipped_existing += 1
        logging.debug("Skipping existing: %s", output_path)
        return

    try:
        raw = source.read_bytes()
    except OSError as exc:
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "read"})
        logging.error("Cannot read %s: %s", source, exc)
        return

    result = try_transcode(raw, v4_layout=v4_layout)

    if isinstance(result, Unsupported):
        stats.unsupported += 1
        stats.failures.append({
            "source": str(source), "error": f"unsupported version {result.tag!r}",
            "type": ROUTE_UNSUPPORTED,
        })
        return

    if isinstance(result, TranscodeFailure):
        if result.reason == FAILURE_TRUNCATED:
            stats.truncated += 1
        else:
            stats.structural += 1
        stats.failures.append({
            "source": str(source), "error": result.detail, "type": result.reason,
        })
        logging.warning("Transcode failed for %s (%s): %s", source, result.reason, result.detail)
        return

    if isinstance(result, PassThrough):
        payload = raw
        stats.passed_through += 1
        logging.debug("Already canonical (v%s): %s", result.version, source)
    else:
        try:
            header, _, _ = parse_v2(result.data)
        except MeshParseError as exc:
            stats.failed += 1
            stats.failures.append({"source": str(source), "error": str(exc), "type": "validation"})
            logging.error("Canonical output invalid for %s: %s", source, exc)
            return
        if (header.vertex_count, header.face_count) != (result.vertex_count, result.face_count):
            stats.failed += 1
            stats.failures.append({
                "source": str(source), "error": "canonical header counts disagree",
                "type": "validation",
            })
            logging.error("Canonical header counts disagree for %s", source)
            return
        payload = result.data
        stats.converted += 1

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(payload)
    logging.debug("Wrote %s -> %s (%d bytes)", source, output_path, len(payload))


def _mesh_convert_worker(
    source: Path,
    output_path: Path,
    force: bool,
    v4_layout: str,
) -> ConversionStats:
    """Worker function for parallel mesh conversion. Returns local stats."""
    stats = ConversionStats()
    try:
        convert_single_mesh(source, output_path, force, v4_layout, stats)
    except Exception as exc:  # noqa: BLE001
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "worker"})
        logging.error("Mesh worker error for %s: %s", source, exc)
    return stats


def _log_progress(done: int, total: int, stats: ConversionStats, start_time: float) -> None:
    logging.info(
        "Progress: %d/%d (%.1f%%) converted=%d passthrough=%d failed=%d [%.1fs]",
        done, total, 100.0 * done / total,
        stats.converted,
        stats.passed_through,
        stats.unsupported + stats.truncated + stats.structural + stats.failed,
        time.time() - start_time,
    )


def convert_all(
    input_root: Path,
    output_root: Path,
    force: bool,
    dry_run: bool,
    v4_layout: str,
    report_path: Optional[Path],
    workers: int = 1,
) -> ConversionStats:
    """Transcode every mesh found under input_root."""
    stats = ConversionStats()

    mesh_files = discover_mesh_files(input_root)
    total = len(mesh_files)
    logging.info("Found %d mesh files under %s (workers=%d)", total, input_root, workers)

    jobs: List[Tuple[Path, Path]] = [
        (path, output_path_for(path, input_root, output_root)) for path in mesh_files
    ]

    if dry_run:
        for src, dst in jobs:
            logging.info("[DRY-RUN] Would transcode %s -> %s", src, dst)
        stats.total_found = total
        return stats

    start_time = time.time()

    if workers <= 1:
        for idx, (src, dst) in enumerate(jobs):
            convert_single_mesh(src, dst, force, v4_layout, stats)
            if (idx + 1) % 500 == 0 or (idx + 1) == total:
                _log_progress(idx + 1, total, stats, start_time)
    else:
        completed = 0
        chunksize = max(1, total // (workers * 4))
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures_iter = executor.map(
                _mesh_convert_worker,
                [src for src, _ in jobs],
                [dst for _, dst in jobs],
                [force] * total,
                [v4_layout] * total,
                chunksize=chunksize,
            )
            for worker_stats in futures_iter:
                merge_stats(stats, worker_stats)
                completed += 1
                if completed % 500 == 0 or completed == total:
                    _log_progress(completed, total, stats, start_time)

    logging.info(
        "Transcode complete in %.1fs: %d converted, %d passed through, %d existing, "
        "%d unsupported, %d truncated, %d structural, %d failed",
        time.time() - start_time,
        stats.converted, stats.passed_through, stats.skipped_existing,
        stats.unsupported, stats.truncated, stats.structural, stats.failed,
    )

    if report_path:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report = {
            "input_root": str(input_root),
            "v4_layout": v4_layout,
            "total_found": stats.total_found,
            "converted": stats.converted,
            "passed_through": stats.passed_through,
            "skipped_existing": stats.skipped_existing,
            "unsupported": stats.unsupported,
            "truncated": stats.truncated,
            "structural": stats.structural,
            "failed": stats.failed,
            "failures": stats.failures,
        }
        report_path.write_text(json.dumps(report, indent=2))
        logging.info("Report written to %s", report_path)

    return stats


def probe_files(input_root: Path) -> int:
    """Log the v4 header layout probe for every 4.xx mesh under input_root."""
    disagreements = 0
    for path in discover_mesh_files(input_root):
        try:
            raw = path.read_bytes()
        except OSError as exc:
            logging.error("%s: cannot read: %s", path, exc)
            continue
        try:
            route, _ = classify_version(raw)
        except TruncatedInputError:
            continue
        if route != ROUTE_V4:
            continue
        report = probe_v4_layouts(raw)
        usable = [layout for layout, entry in report.items() if entry.get("ok")]
        if len(usable) != 1:
            disagreements += 1
        logging.info("%s: usable layouts=%s %s", path, usable or "none", json.dumps(report))
    return disagreements


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Transcode version 3.xx/4.xx mesh files into the canonical version 2.00 layout."
    )
    parser.add_argument(
        "--input", type=Path, required=True,
        help="Mesh file or directory searched recursively for *.mesh files",
    )
    parser.add_argument(
        "--output-root", type=Path, default=None,
        help="Output directory for canonical meshes (required unless --probe-v4-layout)",
    )
    parser.add_argument("--force", action="store_true", help="Overwrite existing outputs")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    parser.add_argument(
        "--v4-layout", choices=V4_LAYOUTS, default=V4_LAYOUT_FIXED,
        help="Header layout used for version 4.xx meshes (default: fixed 24-byte header)",
    )
    parser.add_argument(
        "--probe-v4-layout", action="store_true",
        help="Decode every 4.xx mesh under both header layouts and report which one yields sane geometry",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--report", type=Path, default=None,
        help="Path for JSON conversion report",
    )
    parser.add_argument(
        "--workers", type=int, default=os.cpu_count() or 4,
        help="Number of parallel worker processes (default: number of CPUs).",
    )

    args = parser.parse_args()

    if not args.probe_v4_layout and args.output_root is None:
        parser.error("--output-root is required unless --probe-v4-layout is given")

    configure_logging(args.verbose)

    if not args.input.exists():
        logging.error("Input not found: %s", args.input)
        return 1

    if args.probe_v4_layout:
        disagreements = probe_files(args.input)
        if disagreements:
            logging.warning("%d files without exactly one usable v4 layout", disagreements)
        return 0

    stats = convert_all(
        input_root=args.input,
        output_root=args.output_root,
        force=args.force,
        dry_run=args.dry_run,
        v4_layout=args.v4_layout,
        report_path=args.report,
        workers=max(1, args.workers),
    )

    failed = stats.unsupported + stats.truncated + stats.structural + stats.failed
    if failed > 0:
        logging.warning("%d files were not transcoded", failed)

    return 0


if __name__ == "__main__":
    sys.exit(main())
