"""
Static ELF64 writer for the raw Linux byte backend (--elf-raw).

One read+execute PT_LOAD segment maps the whole file at 0x400000; the code
starts at file offset 0x1000, so the entry point is 0x401000 plus the
offset of `main`.  No sections, no dynamic linking.
"""

from __future__ import annotations
import logging
import os
import struct
from pathlib import Path

from .codegen_x64 import MachineCode

log = logging.getLogger(__name__)

LOAD_ADDRESS = 0x400000
CODE_OFFSET = 0x1000
PAGE_SIZE = 0x1000

ELFCLASS64 = 2
ELFDATA2LSB = 1
EV_CURRENT = 1
ELFOSABI_SYSV = 0
ET_EXEC = 2
EM_X86_64 = 0x3E
PT_LOAD = 1
PF_R, PF_X = 0x4, 0x1

EHDR_SIZE = 64
PHDR_SIZE = 56


class ELFWriter:
    """Wraps MachineCode into a static x86-64 Linux executable."""

    def __init__(self, load_address: int = LOAD_ADDRESS):
        self.load_address = load_address

    def entry_point(self, mc: MachineCode) -> int:
        return self.load_address + CODE_OFFSET + mc.entry_offset

    def build(self, mc: MachineCode) -> bytes:
        file_size = CODE_OFFSET + len(mc.code)

        ident = b"\x7fELF" + bytes([ELFCLASS64, ELFDATA2LSB, EV_CURRENT,
                                    ELFOSABI_SYSV]) + bytes(8)
        ehdr = ident + struct.pack("<HHIQQQIHHHHHH",
                                   ET_EXEC, EM_X86_64, EV_CURRENT,
                                   self.entry_point(mc),
                                   EHDR_SIZE,   # e_phoff
                                   0,           # e_shoff
                                   0,           # e_flags
                                   EHDR_SIZE, PHDR_SIZE, 1,
                                   0, 0, 0)
        phdr = struct.pack("<IIQQQQQQ", PT_LOAD, PF_R | PF_X, 0,
                           self.load_address, self.load_address,
                           file_size, file_size, PAGE_SIZE)

        out = bytearray(ehdr + phdr)
        out += bytes(CODE_OFFSET - len(out))
        out += mc.code
        log.debug("elf-raw: %d bytes code, entry %#x", len(mc.code), self.entry_point(mc))
        return bytes(out)

    def write(self, path: str | os.PathLike, mc: MachineCode) -> Path:
        path = Path(path)
        path.write_bytes(self.build(mc))
        os.chmod(path, 0o755)
        return path
