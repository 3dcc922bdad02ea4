"""
NVM two-pass assembler and disassembler.

The textual form of an NVM image, as written by `perc --nvm-code`:

    .magic NVM0
            CALL32  func_main       ; 0004
            HALT                    ; 0009
    func_main:
            PUSH32  42              ; 000a
            ...

One instruction per line; `;` starts a comment; a label sits in column 0
(the trailing ':' is optional).  Operands:

  PUSH32               signed decimal, 0x hex or 'c'
  JMP32/JZ32/JNZ32/CALL32  label or absolute image offset
  LOAD/STORE           slot 0-255
  SYSCALL              table name (PRINT, EXIT, ...) or number

Directives: `.magic XXXX` (four bytes, normally first) and `.byte n[, n...]`
for bytes that do not decode as instructions.

How the two-pass algorithm works:
  Pass 1: Walk the lines, assign each label the current offset and add up
          instruction sizes.  Every NVM instruction has a fixed size, so
          forward references need no estimation.
  Pass 2: Emit the bytes, resolving label operands from the symbol table.

`disassemble(image, labels)` is the inverse: it prints the image with the
code generator's labels so that `assemble(disassemble(img, labels)) == img`.
"""

from __future__ import annotations
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .nvm import BRANCH_OPS, MAGIC, OPERAND_SIZES, Op, Syscall, instruction_size, syscall_by_name

__all__ = ['Assembler', 'AssemblerError', 'assemble', 'disassemble']


class AssemblerError(Exception):
    """Raised on assembly errors."""
    def __init__(self, message: str, line_num: int = 0, line_text: str = ""):
        self.line_num = line_num
        self.line_text = line_text
        super().__init__(f"Line {line_num}: {message}" if line_num else message)


# Short spellings accepted on input
ALIASES: Dict[str, Op] = {
    'PUSH': Op.PUSH32,
    'JMP': Op.JMP32,
    'JZ': Op.JZ32,
    'JNZ': Op.JNZ32,
    'CALL': Op.CALL32,
}


def _lookup_op(mnemonic: str) -> Optional[Op]:
    if mnemonic in Op.__members__:
        return Op[mnemonic]
    return ALIASES.get(mnemonic)


# ──────────────────────────────────────────────
# Line parsing
# ──────────────────────────────────────────────

@dataclass
class AsmLine:
    """Parsed assembly source line."""
    label: Optional[str] = None
    mnemonic: Optional[str] = None
    operand: Optional[str] = None
    comment: Optional[str] = None
    line_num: int = 0
    raw: str = ""


def _parse_line(line: str, line_num: int) -> AsmLine:
    """Parse one line of assembly into label, mnemonic, operand, comment."""
    result = AsmLine(line_num=line_num, raw=line)

    # Strip comment (a ';' inside a character literal does not count)
    text = line
    in_char = False
    for i, ch in enumerate(text):
        if ch == "'":
            in_char = not in_char
        elif ch == ';' and not in_char:
            result.comment = text[i + 1:].strip()
            text = text[:i]
            break

    text = text.rstrip()
    if not text:
        return result

    if not text[0].isspace() and not text.startswith('.'):
        parts = text.split(None, 1)
        result.label = parts[0][:-1] if parts[0].endswith(':') else parts[0]
        text = parts[1] if len(parts) > 1 else ""

    text = text.strip()
    if not text:
        return result

    parts = text.split(None, 1)
    result.mnemonic = parts[0].upper()
    if len(parts) > 1:
        result.operand = parts[1].strip()
    return result


def _parse_value(text: str, symbols: Dict[str, int], line_num: int) -> int:
    """Parse a number, a 'c' character literal or a label reference."""
    text = text.strip()
    if len(text) == 3 and text[0] == "'" and text[2] == "'":
        return ord(text[1])
    try:
        return int(text, 0)
    except ValueError:
        pass
    if text in symbols:
        return symbols[text]
    raise AssemblerError(f"Undefined symbol: '{text}'", line_num)


# ──────────────────────────────────────────────
# The Assembler
# ──────────────────────────────────────────────

class Assembler:
    """Two-pass NVM assembler.

    Usage:
        asm = Assembler()
        image = asm.assemble(source_text)
        print(asm.get_listing())
    """

    def __init__(self):
        self.symbols: Dict[str, int] = {}     # label -> image offset
        self.pc: int = 0
        self.binary: bytearray = bytearray()
        self.errors: List[str] = []
        self._lines: List[AsmLine] = []
        self._emitted: List[Tuple[AsmLine, int, bytes]] = []   # (line, offset, bytes)

    def assemble(self, source: str) -> bytes:
        """Assemble source text into an image.

        Raises AssemblerError listing every problem found in the failing pass.
        """
        self.symbols = {}
        self.errors = []
        self._lines = [_parse_line(line, i)
                       for i, line in enumerate(source.split('\n'), 1)]

        self._pass1()
        if self.errors:
            raise AssemblerError("Pass 1 errors:\n" + "\n".join(self.errors))

        self._pass2()
        if self.errors:
            raise AssemblerError("Pass 2 errors:\n" + "\n".join(self.errors))

        return bytes(self.binary)

    def _pass1(self):
        """Pass 1: assign label offsets."""
        self.pc = 0
        for line in self._lines:
            try:
                self._pass1_line(line)
            except AssemblerError as e:
                self.errors.append(str(e))
            except ValueError as e:
                self.errors.append(f"Line {line.line_num}: {e}")

    def _pass1_line(self, line: AsmLine):
        if line.label:
            if line.label in self.symbols:
                raise AssemblerError(f"Duplicate label '{line.label}'", line.line_num)
            self.symbols[line.label] = self.pc

        mnem = line.mnemonic
        if mnem is None:
            return
        if mnem == '.MAGIC':
            self.pc += 4
        elif mnem == '.BYTE':
            self.pc += len(self._byte_list(line))
        else:
            op = _lookup_op(mnem)
            if op is None:
                raise AssemblerError(f"Unknown mnemonic '{mnem}'", line.line_num)
            self.pc += instruction_size(op)

    def _pass2(self):
        """Pass 2: emit bytes using the complete symbol table."""
        self.pc = 0
        self.binary = bytearray()
        self._emitted = []
        for line in self._lines:
            try:
                data = self._pass2_line(line)
            except AssemblerError as e:
                self.errors.append(str(e))
                continue
            except (ValueError, struct.error) as e:
                self.errors.append(f"Line {line.line_num}: {e}")
                continue
            if data:
                self._emitted.append((line, self.pc, data))
                self.binary += data
                self.pc += len(data)

    def _pass2_line(self, line: AsmLine) -> bytes:
        mnem = line.mnemonic
        if mnem is None:
            return b""

        if mnem == '.MAGIC':
            magic = (line.operand or "").encode("ascii")
            if len(magic) != 4:
                raise AssemblerError(".magic needs exactly four characters", line.line_num)
            return magic
        if mnem == '.BYTE':
            return bytes(self._byte_list(line))

        op = _lookup_op(mnem)
        size = OPERAND_SIZES[op]
        if size == 0:
            if line.operand:
                raise AssemblerError(f"{op.name} takes no operand", line.line_num)
            return bytes([op])
        if not line.operand:
            raise AssemblerError(f"{op.name} needs an operand", line.line_num)

        if op == Op.SYSCALL:
            number = syscall_by_name(line.operand)
            if number is None:
                number = _parse_value(line.operand, {}, line.line_num)
            return bytes([op, self._check(number, 0, 255, line)])
        if op in (Op.LOAD, Op.STORE):
            slot = _parse_value(line.operand, {}, line.line_num)
            return bytes([op, self._check(slot, 0, 255, line)])
        if op in BRANCH_OPS:
            target = _parse_value(line.operand, self.symbols, line.line_num)
            return bytes([op]) + struct.pack(">I", self._check(target, 0, 0xFFFFFFFF, line))
        value = _parse_value(line.operand, self.symbols, line.line_num)
        return bytes([op]) + struct.pack(">i", self._check(value, -2**31, 2**31 - 1, line))

    @staticmethod
    def _check(value: int, low: int, high: int, line: AsmLine) -> int:
        if not low <= value <= high:
            raise AssemblerError(f"Operand {value} out of range", line.line_num)
        return value

    @staticmethod
    def _byte_list(line: AsmLine) -> List[int]:
        if not line.operand:
            raise AssemblerError(".byte needs at least one value", line.line_num)
        values = [_parse_value(v, {}, line.line_num) for v in line.operand.split(',')]
        for v in values:
            if not 0 <= v <= 255:
                raise AssemblerError(f"Byte value {v} out of range", line.line_num)
        return values

    def get_listing(self) -> str:
        """Return a human-readable listing showing offset, bytes, and source."""
        lines = [f"{'ADDR':>6}  {'BYTES':<16}  SOURCE", "-" * 60]
        emitted = {id(line): (addr, data) for line, addr, data in self._emitted}
        for asmline in self._lines:
            raw = asmline.raw.strip()
            if id(asmline) in emitted:
                addr, data = emitted[id(asmline)]
                hex_str = ' '.join(f'{b:02X}' for b in data)
                lines.append(f"${addr:04X}  {hex_str:<16}  {raw[:40]}")
            elif raw:
                lines.append(f"        {'':16}  {raw}")
        return '\n'.join(lines)


# ──────────────────────────────────────────────
# Disassembler
# ──────────────────────────────────────────────

def _format_operand(op: Op, value: int, names: Dict[int, List[str]]) -> str:
    if op == Op.SYSCALL:
        try:
            return Syscall(value).name
        except ValueError:
            return str(value)
    if op in BRANCH_OPS and names.get(value):
        return names[value][0]
    return str(value)


def _decode(image: bytes, start: int) -> List[Tuple[int, Optional[Op]]]:
    """(offset, opcode) for each instruction; None marks a stray byte."""
    result = []
    pc = start
    while pc < len(image):
        try:
            op = Op(image[pc])
        except ValueError:
            op = None
        if op is None or pc + instruction_size(op) > len(image):
            result.append((pc, None))
            pc += 1
        else:
            result.append((pc, op))
            pc += instruction_size(op)
    return result


def disassemble(image: bytes, labels: Optional[Dict[str, int]] = None) -> str:
    """Render an image as assembler text that reassembles to the same bytes."""
    start = 4 if image[:4] == MAGIC else 0
    decoded = _decode(image, start)
    boundaries = {pc for pc, _ in decoded} | {len(image)}

    # Only labels that land on an instruction boundary can be printed
    names: Dict[int, List[str]] = {}
    for name, offset in sorted((labels or {}).items(), key=lambda kv: (kv[1], kv[0])):
        if offset in boundaries:
            names.setdefault(offset, []).append(name)

    out = [f"; NVM image, {len(image)} bytes"]
    if start:
        out.append(f".magic {MAGIC.decode('ascii')}")

    for pc, op in decoded:
        for name in names.get(pc, []):
            out.append(f"{name}:")
        if op is None:
            out.append(f"        .byte   {image[pc]:#04x}".ljust(32) + f"; {pc:04x}")
            continue

        operand = image[pc + 1:pc + instruction_size(op)]
        if OPERAND_SIZES[op] == 0:
            text = f"        {op.name}"
        elif op == Op.PUSH32:
            text = f"        {op.name:<8}{struct.unpack('>i', operand)[0]}"
        elif op in BRANCH_OPS:
            target = struct.unpack('>I', operand)[0]
            text = f"        {op.name:<8}{_format_operand(op, target, names)}"
        else:
            text = f"        {op.name:<8}{_format_operand(op, operand[0], names)}"
        out.append(text.ljust(32) + f"; {pc:04x}")

    for name in names.get(len(image), []):
        out.append(f"{name}:")
    return "\n".join(out) + "\n"


# ──────────────────────────────────────────────
# Convenience functions
# ──────────────────────────────────────────────

def assemble(source: str) -> bytes:
    """Assemble source text into an NVM image."""
    return Assembler().assemble(source)
