"""
PE32+ image writer.

Lays out a minimal Windows x64 console executable:

  0x000  DOS header (e_lfanew = 0x80) + DOS stub
  0x080  "PE\\0\\0", COFF header, 240-byte optional header, section headers
  0x200  .text  (RVA 0x1000)
  ...    .idata (RVA 0x1000 + align(code, 0x1000)), only when code imports

The import section holds one KERNEL32.dll descriptor (plus the null
terminator), the DLL name, the ILT, the IAT and the hint/name entries.
Every `call [rip+disp32]` site recorded by the code generator is patched
to reach its IAT slot.
"""

from __future__ import annotations
import logging
import os
import struct
from pathlib import Path
from typing import Dict, List, Tuple

from .codegen_x64 import MachineCode

log = logging.getLogger(__name__)

IMAGE_BASE = 0x140000000
SECTION_ALIGNMENT = 0x1000
FILE_ALIGNMENT = 0x200
TEXT_RVA = 0x1000
HEADERS_SIZE = 0x200
PE_OFFSET = 0x80

IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
IMAGE_FILE_LARGE_ADDRESS_AWARE = 0x0020
PE32_PLUS_MAGIC = 0x20B
OPTIONAL_HEADER_SIZE = 0xF0
NUM_DATA_DIRECTORIES = 16
IMAGE_SUBSYSTEM_WINDOWS_CUI = 3
DLL_CHARACTERISTICS = 0x0140   # DYNAMIC_BASE | NX_COMPAT

TEXT_CHARACTERISTICS = 0x60000020   # CODE | EXECUTE | READ
IDATA_CHARACTERISTICS = 0xC0000040  # INITIALIZED_DATA | READ | WRITE

IMPORT_DLL = "KERNEL32.dll"
DESCRIPTOR_SIZE = 20

DOS_STUB = bytes([
    0x0E, 0x1F, 0xBA, 0x0E, 0x00, 0xB4, 0x09, 0xCD,
    0x21, 0xB8, 0x01, 0x4C, 0xCD, 0x21,
]) + b"This program cannot be run in DOS mode.\r\r\n$" + bytes(7)


def align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def _pad_to(buf: bytearray, size: int):
    if len(buf) < size:
        buf.extend(bytes(size - len(buf)))


class ImportTable:
    """The .idata contents for one DLL, laid out at a known RVA."""

    def __init__(self, names: List[str], rva: int):
        self.names = list(names)
        self.rva = rva
        self.slots: Dict[str, int] = {}
        self.data = self._build()

    def _build(self) -> bytes:
        n = len(self.names)
        data = bytearray(DESCRIPTOR_SIZE * 2)

        self.name_rva = self.rva + len(data)
        data += IMPORT_DLL.encode("ascii") + b"\0"
        if len(data) % 2:
            data += b"\0"

        self.ilt_rva = self.rva + len(data)
        ilt_start = len(data)
        data += bytes((n + 1) * 8)

        self.iat_rva = self.rva + len(data)
        iat_start = len(data)
        data += bytes((n + 1) * 8)
        self.iat_size = (n + 1) * 8

        for i, name in enumerate(self.names):
            hint_rva = self.rva + len(data)
            data += struct.pack("<H", 0) + name.encode("ascii") + b"\0"
            if len(data) % 2:
                data += b"\0"
            struct.pack_into("<Q", data, ilt_start + i * 8, hint_rva)
            struct.pack_into("<Q", data, iat_start + i * 8, hint_rva)
            self.slots[name] = self.iat_rva + i * 8

        struct.pack_into("<IiiII", data, 0, self.ilt_rva, 0, -1,
                         self.name_rva, self.iat_rva)
        return bytes(data)


class PEWriter:
    """Wraps MachineCode into a PE32+ console executable."""

    def __init__(self, image_base: int = IMAGE_BASE):
        self.image_base = image_base

    def build(self, mc: MachineCode) -> bytes:
        code = bytearray(mc.code)
        code_raw = align(len(code), FILE_ALIGNMENT)
        idata_rva = TEXT_RVA + align(len(code), SECTION_ALIGNMENT)

        imports = None
        if mc.imports:
            imports = ImportTable(mc.imports, idata_rva)
            self._patch_import_sites(code, mc.import_sites, imports)
        elif mc.import_sites:
            raise ValueError("code has import call sites but no import list")

        sections: List[Tuple[bytes, int, int, int, int, int]] = []
        # (name, virtual size, rva, raw size, raw offset, characteristics)
        sections.append((b".text", len(code), TEXT_RVA, code_raw, HEADERS_SIZE,
                         TEXT_CHARACTERISTICS))
        idata_raw = 0
        if imports is not None:
            idata_raw = align(len(imports.data), FILE_ALIGNMENT)
            sections.append((b".idata", len(imports.data), idata_rva, idata_raw,
                             HEADERS_SIZE + code_raw, IDATA_CHARACTERISTICS))

        image_size = TEXT_RVA + sum(align(s[1], SECTION_ALIGNMENT) for s in sections)

        out = bytearray()
        out += self._dos_header()
        out += DOS_STUB
        _pad_to(out, PE_OFFSET)
        out += b"PE\0\0"
        out += struct.pack("<HHIIIHH", IMAGE_FILE_MACHINE_AMD64, len(sections),
                           0, 0, 0, OPTIONAL_HEADER_SIZE,
                           IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_LARGE_ADDRESS_AWARE)
        out += self._optional_header(mc, code_raw, idata_raw, image_size, imports)
        for name, vsize, rva, raw_size, raw_off, chars in sections:
            out += struct.pack("<8sIIIIIIHHI", name, vsize, rva, raw_size, raw_off,
                               0, 0, 0, 0, chars)
        _pad_to(out, HEADERS_SIZE)

        out += code
        _pad_to(out, HEADERS_SIZE + code_raw)
        if imports is not None:
            out += imports.data
            _pad_to(out, HEADERS_SIZE + code_raw + idata_raw)

        log.debug("pe: %d bytes code, %d imports, image size %#x",
                  len(code), len(mc.imports), image_size)
        return bytes(out)

    def write(self, path: str | os.PathLike, mc: MachineCode) -> Path:
        path = Path(path)
        path.write_bytes(self.build(mc))
        return path

    @staticmethod
    def _patch_import_sites(code: bytearray, sites: List[Tuple[int, str]],
                            imports: ImportTable):
        for site, name in sites:
            slot = imports.slots[name]
            disp = slot - (TEXT_RVA + site + 4)
            struct.pack_into("<i", code, site, disp)

    @staticmethod
    def _dos_header() -> bytes:
        # e_magic .. e_ovno, e_res[4], e_oemid, e_oeminfo, e_res2[10], e_lfanew
        header = struct.pack("<2s13H", b"MZ", 0x90, 3, 0, 4, 0, 0xFFFF, 0,
                             0xB8, 0, 0, 0, 0x40, 0)
        header += bytes(8) + struct.pack("<HH", 0, 0) + bytes(20)
        header += struct.pack("<I", PE_OFFSET)
        return header

    def _optional_header(self, mc: MachineCode, code_raw: int, idata_raw: int,
                         image_size: int, imports) -> bytes:
        opt = struct.pack("<HBBIIIII", PE32_PLUS_MAGIC, 14, 0, code_raw, idata_raw,
                          0, TEXT_RVA + mc.entry_offset, TEXT_RVA)
        opt += struct.pack("<QII", self.image_base, SECTION_ALIGNMENT, FILE_ALIGNMENT)
        opt += struct.pack("<HHHHHHI", 6, 0, 0, 0, 6, 0, 0)
        opt += struct.pack("<IIIHH", image_size, HEADERS_SIZE, 0,
                           IMAGE_SUBSYSTEM_WINDOWS_CUI, DLL_CHARACTERISTICS)
        opt += struct.pack("<QQQQII", 0x100000, 0x1000, 0x100000, 0x1000, 0,
                           NUM_DATA_DIRECTORIES)

        dirs = [(0, 0)] * NUM_DATA_DIRECTORIES
        if imports is not None:
            dirs[1] = (imports.rva, DESCRIPTOR_SIZE * 2)
            dirs[12] = (imports.iat_rva, imports.iat_size)
        for rva, size in dirs:
            opt += struct.pack("<II", rva, size)
        if len(opt) != OPTIONAL_HEADER_SIZE:
            raise ValueError(f"optional header is {len(opt)} bytes, expected "
                             f"{OPTIONAL_HEADER_SIZE:#x}")
        return opt
