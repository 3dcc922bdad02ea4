"""
x86-64 machine-code emitter.

A small encoder for the 64-bit instructions the native byte backends use.
Memory operands are `[base + disp]`, encoded with the shortest legal ModRM
form except that an rbp (or r13) base always takes a 32-bit displacement,
so every frame access has the same length.

Branch targets are Labels: a rel32 field is emitted as zero, its site is
remembered, and the field is rewritten with `target - (site + 4)` once the
label is bound (immediately, for backward references).
"""

from __future__ import annotations
import struct
from typing import Dict, List, Optional, Tuple


# ──────────────────────────────────────────────
# Registers and condition codes
# ──────────────────────────────────────────────

RAX, RCX, RDX, RBX, RSP, RBP, RSI, RDI = range(8)
R8, R9, R10, R11, R12, R13, R14, R15 = range(8, 16)

REG_NAMES = ["rax", "rcx", "rdx", "rbx", "rsp", "rbp", "rsi", "rdi",
             "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15"]

# Condition-code nibble for Jcc (0F 80+cc) and SETcc (0F 90+cc)
CC_B, CC_AE, CC_E, CC_NE, CC_BE, CC_A = 0x2, 0x3, 0x4, 0x5, 0x6, 0x7
CC_S, CC_NS = 0x8, 0x9
CC_L, CC_GE, CC_LE, CC_G = 0xC, 0xD, 0xE, 0xF

# Group-1 ALU opcodes: (reg/reg form "op r/m64, r64", /digit for immediate form)
ALU_ADD = (0x01, 0)
ALU_OR = (0x09, 1)
ALU_AND = (0x21, 4)
ALU_SUB = (0x29, 5)
ALU_XOR = (0x31, 6)
ALU_CMP = (0x39, 7)


def fits_i8(value: int) -> bool:
    return -128 <= value <= 127


def fits_i32(value: int) -> bool:
    return -2**31 <= value < 2**31


class Label:
    """A branch target inside an X86Emitter buffer."""

    def __init__(self, name: str = ""):
        self.name = name
        self.offset: Optional[int] = None
        self.sites: List[int] = []

    @property
    def bound(self) -> bool:
        return self.offset is not None

    def __repr__(self):
        where = f"@{self.offset:#x}" if self.bound else "unbound"
        return f"Label({self.name!r}, {where})"


class X86Emitter:
    """Accumulates x86-64 machine code in a bytearray."""

    def __init__(self):
        self.code = bytearray()
        self.labels: List[Label] = []
        # (offset of the 4-byte field, import name)
        self.import_sites: List[Tuple[int, str]] = []

    @property
    def pos(self) -> int:
        return len(self.code)

    # ── Raw output ───────────────────────────

    def emit(self, *data: int):
        self.code.extend(data)

    def emit_bytes(self, data: bytes):
        self.code.extend(data)

    def imm8(self, value: int):
        self.code.extend(struct.pack("<b", value))

    def imm32(self, value: int):
        self.code.extend(struct.pack("<i", value))

    def imm64(self, value: int):
        self.code.extend(struct.pack("<q", value))

    # ── Labels ───────────────────────────────

    def new_label(self, name: str = "") -> Label:
        label = Label(name)
        self.labels.append(label)
        return label

    def bind(self, label: Label):
        if label.bound:
            raise ValueError(f"label {label.name!r} bound twice")
        label.offset = self.pos
        for site in label.sites:
            self._patch_rel32(site, label.offset)

    def _patch_rel32(self, site: int, target: int):
        self.code[site:site + 4] = struct.pack("<i", target - (site + 4))

    def _rel32(self, label: Label):
        site = self.pos
        self.imm32(0)
        label.sites.append(site)
        if label.bound:
            self._patch_rel32(site, label.offset)

    def check_labels(self):
        """Raise if any referenced label was never bound."""
        for label in self.labels:
            if label.sites and not label.bound:
                raise ValueError(f"unbound label {label.name!r}")

    # ── Encoding helpers ─────────────────────

    def _rex(self, w: bool, reg: int = 0, rm: int = 0, force: bool = False):
        rex = 0x40 | (0x08 if w else 0) | ((reg >> 3) << 2) | (rm >> 3)
        if rex != 0x40 or force:
            self.emit(rex)

    def _modrm_reg(self, reg: int, rm: int):
        self.emit(0xC0 | ((reg & 7) << 3) | (rm & 7))

    def _modrm_mem(self, reg: int, base: int, disp: int):
        reg &= 7
        low = base & 7
        if low == RBP:
            self.emit(0x80 | (reg << 3) | low)
            self.imm32(disp)
            return
        if disp == 0:
            mod = 0x00
        elif fits_i8(disp):
            mod = 0x40
        else:
            mod = 0x80
        self.emit(mod | (reg << 3) | low)
        if low == RSP:
            self.emit(0x24)  # SIB: base=rsp, no index
        if mod == 0x40:
            self.imm8(disp)
        elif mod == 0x80:
            self.imm32(disp)

    # ── Stack ────────────────────────────────

    def push(self, reg: int):
        self._rex(False, rm=reg)
        self.emit(0x50 + (reg & 7))

    def pop(self, reg: int):
        self._rex(False, rm=reg)
        self.emit(0x58 + (reg & 7))

    # ── Moves ────────────────────────────────

    def mov(self, dst: int, src: int):
        """mov dst, src (64-bit)"""
        self._rex(True, src, dst)
        self.emit(0x89)
        self._modrm_reg(src, dst)

    def mov_load(self, dst: int, base: int, disp: int = 0):
        """mov dst, [base+disp]"""
        self._rex(True, dst, base)
        self.emit(0x8B)
        self._modrm_mem(dst, base, disp)

    def mov_store(self, base: int, disp: int, src: int):
        """mov [base+disp], src"""
        self._rex(True, src, base)
        self.emit(0x89)
        self._modrm_mem(src, base, disp)

    def mov_store_imm(self, base: int, disp: int, value: int):
        """mov qword [base+disp], imm32 (sign-extended)"""
        self._rex(True, 0, base)
        self.emit(0xC7)
        self._modrm_mem(0, base, disp)
        self.imm32(value)

    def lea(self, dst: int, base: int, disp: int = 0):
        """lea dst, [base+disp]"""
        self._rex(True, dst, base)
        self.emit(0x8D)
        self._modrm_mem(dst, base, disp)

    def lea_rip(self, dst: int, target: int):
        """lea dst, [rip + (target - end_of_instruction)]"""
        self._rex(True, dst, 0)
        self.emit(0x8D, 0x05 | ((dst & 7) << 3))
        self.imm32(target - (self.pos + 4))

    def mov_imm64(self, reg: int, value: int):
        """mov reg, imm64"""
        self._rex(True, rm=reg)
        self.emit(0xB8 + (reg & 7))
        self.imm64(value)

    def mov_imm32(self, reg: int, value: int):
        """mov reg32, imm32 (zero-extends into the 64-bit register)"""
        self._rex(False, rm=reg)
        self.emit(0xB8 + (reg & 7))
        self.code.extend(struct.pack("<I", value & 0xFFFFFFFF))

    def movzx_byte(self, dst: int, src: int):
        """movzx dst, src8 (src is al/cl/dl/bl)"""
        self._rex(True, dst, src)
        self.emit(0x0F, 0xB6)
        self._modrm_reg(dst, src)

    def movzx_load_byte(self, dst: int, base: int, disp: int = 0):
        """movzx dst, byte [base+disp]"""
        self._rex(True, dst, base)
        self.emit(0x0F, 0xB6)
        self._modrm_mem(dst, base, disp)

    def mov_store_byte(self, base: int, disp: int, src: int):
        """mov byte [base+disp], src8 (src is al/cl/dl/bl)"""
        self._rex(False, src, base)
        self.emit(0x88)
        self._modrm_mem(src, base, disp)

    def mov_store_byte_imm(self, base: int, disp: int, value: int):
        """mov byte [base+disp], imm8"""
        self._rex(False, 0, base)
        self.emit(0xC6)
        self._modrm_mem(0, base, disp)
        self.emit(value & 0xFF)

    # ── Arithmetic ───────────────────────────

    def alu(self, op: Tuple[int, int], dst: int, src: int):
        """add/or/and/sub/xor/cmp dst, src (64-bit)"""
        self._rex(True, src, dst)
        self.emit(op[0])
        self._modrm_reg(src, dst)

    def alu_imm(self, op: Tuple[int, int], reg: int, value: int):
        """add/or/and/sub/xor/cmp reg, imm"""
        self._rex(True, rm=reg)
        if fits_i8(value):
            self.emit(0x83)
            self._modrm_reg(op[1], reg)
            self.imm8(value)
        elif reg == RAX:
            self.emit(op[0] + 4)  # short form: op rax, imm32
            self.imm32(value)
        else:
            self.emit(0x81)
            self._modrm_reg(op[1], reg)
            self.imm32(value)

    def alu_byte_imm(self, op: Tuple[int, int], reg: int, value: int):
        """add/cmp/... reg8, imm8 (reg is al/cl/dl/bl)"""
        self.emit(0x80)
        self._modrm_reg(op[1], reg)
        self.emit(value & 0xFF)

    def cmp_byte_mem_imm(self, base: int, disp: int, value: int):
        """cmp byte [base+disp], imm8"""
        self._rex(False, 0, base)
        self.emit(0x80)
        self._modrm_mem(7, base, disp)
        self.emit(value & 0xFF)

    def test(self, a: int, b: int):
        """test a, b (64-bit)"""
        self._rex(True, b, a)
        self.emit(0x85)
        self._modrm_reg(b, a)

    def imul(self, dst: int, src: int):
        """imul dst, src"""
        self._rex(True, dst, src)
        self.emit(0x0F, 0xAF)
        self._modrm_reg(dst, src)

    def imul_imm8(self, dst: int, src: int, value: int):
        """imul dst, src, imm8"""
        self._rex(True, dst, src)
        self.emit(0x6B)
        self._modrm_reg(dst, src)
        self.imm8(value)

    def _group3(self, digit: int, reg: int):
        self._rex(True, rm=reg)
        self.emit(0xF7)
        self._modrm_reg(digit, reg)

    def neg(self, reg: int):
        self._group3(3, reg)

    def div(self, reg: int):
        """Unsigned rdx:rax / reg"""
        self._group3(6, reg)

    def idiv(self, reg: int):
        """Signed rdx:rax / reg"""
        self._group3(7, reg)

    def cqo(self):
        self.emit(0x48, 0x99)

    def inc(self, reg: int):
        self._rex(True, rm=reg)
        self.emit(0xFF)
        self._modrm_reg(0, reg)

    def dec(self, reg: int):
        self._rex(True, rm=reg)
        self.emit(0xFF)
        self._modrm_reg(1, reg)

    def setcc(self, cc: int, reg: int = RAX):
        """setcc reg8 (al/cl/dl/bl)"""
        self.emit(0x0F, 0x90 + cc)
        self._modrm_reg(0, reg)

    # ── Control flow ─────────────────────────

    def jmp(self, label: Label):
        self.emit(0xE9)
        self._rel32(label)

    def jcc(self, cc: int, label: Label):
        self.emit(0x0F, 0x80 + cc)
        self._rel32(label)

    def call(self, label: Label):
        self.emit(0xE8)
        self._rel32(label)

    def call_import(self, name: str, sentinel: int):
        """call [rip+disp32] through the IAT; disp32 holds `sentinel` until the
        image writer patches the recorded site."""
        self.emit(0xFF, 0x15)
        self.import_sites.append((self.pos, name))
        self.imm32(sentinel)

    def ret(self):
        self.emit(0xC3)

    def syscall(self):
        self.emit(0x0F, 0x05)

    def leave(self):
        """mov rsp, rbp; pop rbp"""
        self.mov(RSP, RBP)
        self.pop(RBP)


def disassemble_hex(code: bytes, width: int = 16) -> str:
    """Hex dump with offsets, used by --verbose and test diagnostics."""
    lines = []
    for i in range(0, len(code), width):
        chunk = code[i:i + width]
        lines.append(f"{i:08X}  " + " ".join(f"{b:02X}" for b in chunk))
    return "\n".join(lines)
