"""
NVM assembler, disassembler and interpreter tests.

The round-trip property: the `--nvm-code` listing of any compiled program
reassembles to the identical image.
"""

import pytest

from per_compiler import compile_source, parse_program
from per_compiler.nvm import MAGIC, NVMCodeGenerator, Op, Syscall
from per_compiler.nvm_asm import Assembler, AssemblerError, assemble, disassemble
from per_compiler.nvm_vm import NVM, LOCAL_BASE, StopReason, VMError, execute, wrap32


def _asm(body: str) -> bytes:
    """Assemble `body` behind the magic."""
    return assemble(".magic NVM0\n" + body)


def _vm(body: str, **kwargs) -> NVM:
    return execute(_asm(body), max_steps=10_000, **kwargs)


PROGRAMS = {
    "hello": 'package main\nimport "stdio"\nfunc main() { stdio.Println("hi"); stdio.Println(-12) }\n',
    "loops": '''package main
import "stdio"
import "novaria"
func sum(n int) int {
    var t = 0
    var i = 1
    for i <= n { t = t + i; i = i + 1 }
    return t
}
func main() {
    var a [3]int
    a[2] = sum(10)
    if a[2] > 50 && novaria.CapCheck(CAP_FS_READ) { stdio.Println(a[2]) } else { stdio.Println(0) }
    asm {
        push 33
        syscall PRINT
    }
}
''',
}


# ─── Assembler ───────────────────────────────────────────────────

class TestAssembler:
    def test_basic_encoding(self):
        image = _asm("        PUSH32  -2\n        HALT\n")
        assert image == MAGIC + bytes([Op.PUSH32, 0xFF, 0xFF, 0xFF, 0xFE, Op.HALT])

    def test_aliases_and_case(self):
        assert _asm("  push 1\n  Halt") == _asm("  PUSH32 1\n  HALT")

    def test_labels_forward_and_backward(self):
        image = _asm("top:\n  JMP end\n  JMP top\nend\n  HALT")
        # top = 4, end = 14
        assert image[4:9] == bytes([Op.JMP32, 0, 0, 0, 14])
        assert image[9:14] == bytes([Op.JMP32, 0, 0, 0, 4])

    def test_operand_forms(self):
        image = _asm("  PUSH 'A'\n  PUSH 0x10\n  LOAD 3\n  SYSCALL PRINT\n  SYSCALL 7")
        assert image[4:] == bytes([Op.PUSH32, 0, 0, 0, 65, Op.PUSH32, 0, 0, 0, 16,
                                   Op.LOAD, 3, Op.SYSCALL, Syscall.PRINT,
                                   Op.SYSCALL, 7])

    def test_byte_directive_and_comments(self):
        image = _asm("  .byte 0x03, 255 ; raw\n  NOP ; trailing")
        assert image[4:] == bytes([3, 255, Op.NOP])

    def test_undefined_symbol(self):
        with pytest.raises(AssemblerError, match="Undefined symbol: 'nowhere'"):
            _asm("  JMP nowhere")

    def test_errors_collected_per_pass(self):
        with pytest.raises(AssemblerError) as info:
            _asm("  FROB\n  ZAP 1")
        text = str(info.value)
        assert text.startswith("Pass 1 errors:")
        assert "Line 2: Unknown mnemonic 'FROB'" in text
        assert "Line 3: Unknown mnemonic 'ZAP'" in text

    def test_duplicate_label(self):
        with pytest.raises(AssemblerError, match="Duplicate label 'x'"):
            _asm("x:\n  NOP\nx:\n  NOP")

    def test_operand_validation(self):
        with pytest.raises(AssemblerError, match="HALT takes no operand"):
            _asm("  HALT 1")
        with pytest.raises(AssemblerError, match="PUSH32 needs an operand"):
            _asm("  PUSH")
        with pytest.raises(AssemblerError, match="Operand 256 out of range"):
            _asm("  STORE 256")

    def test_magic_length(self):
        with pytest.raises(AssemblerError, match="exactly four characters"):
            assemble(".magic NVM")

    def test_listing(self):
        asm = Assembler()
        asm.assemble(".magic NVM0\nstart:\n  PUSH 1\n  HALT")
        listing = asm.get_listing()
        assert "$0004  02 00 00 00 01" in listing
        assert "$0009  00" in listing


# ─── Disassembler ────────────────────────────────────────────────

class TestDisassembler:
    def test_layout(self):
        image = _asm("  PUSH 5\n  SYSCALL PRINT\n  HALT")
        lines = disassemble(image).splitlines()
        assert lines[0] == f"; NVM image, {len(image)} bytes"
        assert lines[1] == ".magic NVM0"
        assert lines[2] == "        PUSH32  5               ; 0004"
        assert lines[3] == "        SYSCALL PRINT           ; 0009"
        assert lines[4] == "        HALT                    ; 000b"

    def test_labels_name_targets(self):
        image = _asm("  JMP there\nthere:\n  HALT")
        text = disassemble(image, {"there": 9})
        assert "there:" in text.splitlines()
        assert "JMP32   there" in text

    def test_stray_bytes(self):
        image = MAGIC + bytes([0xEE, Op.HALT, Op.PUSH32, 1])
        lines = disassemble(image).splitlines()
        assert lines[2].split()[:2] == [".byte", "0xee"]
        assert lines[3].split()[0] == "HALT"
        # truncated PUSH32 operand
        assert lines[4].split()[:2] == [".byte", "0x02"]
        assert assemble(disassemble(image)) == image

    @pytest.mark.parametrize("name", sorted(PROGRAMS))
    def test_round_trip(self, name):
        gen = NVMCodeGenerator()
        image = gen.generate(parse_program(PROGRAMS[name]))
        assert assemble(disassemble(image, gen.labels)) == image

    def test_listing_target_reassembles(self):
        text = compile_source(PROGRAMS["hello"], target="nvm-code")
        image = compile_source(PROGRAMS["hello"], target="novaria")
        assert assemble(text) == image


# ─── Interpreter ─────────────────────────────────────────────────

class TestInterpreter:
    def test_bad_magic(self):
        with pytest.raises(VMError, match="missing NVM0 magic"):
            NVM(b"XXXX\x00")

    def test_wrap32(self):
        assert wrap32(2**31) == -2**31
        assert wrap32(-2**31 - 1) == 2**31 - 1
        vm = _vm("  PUSH 2147483647\n  PUSH 1\n  ADD\n  HALT")
        assert vm.stack == [-2**31]

    def test_cmp_and_swap(self):
        vm = _vm("  PUSH 1\n  PUSH 2\n  CMP\n  PUSH 5\n  PUSH 5\n  CMP\n"
                 "  PUSH 1\n  PUSH 2\n  SWAP\n  HALT")
        assert vm.stack == [-1, 0, 2, 1]

    def test_division_by_zero(self):
        vm = _vm("  PUSH 1\n  PUSH 0\n  DIV\n  HALT")
        assert vm.stop_reason == StopReason.ERROR
        assert vm.error.startswith("division by zero")

    def test_stack_underflow(self):
        vm = _vm("  POP")
        assert vm.stop_reason == StopReason.ERROR
        assert "underflow" in vm.error

    def test_illegal_opcode(self):
        vm = execute(MAGIC + bytes([0xEE]))
        assert vm.stop_reason == StopReason.ILLEGAL

    def test_jump_outside_image(self):
        vm = _vm("  JMP 1000")
        assert vm.stop_reason == StopReason.ERROR
        assert "outside the image" in vm.error

    def test_ret_from_top_level_halts(self):
        assert _vm("  RET").stop_reason == StopReason.HALT

    def test_call_frames_are_private(self):
        vm = _vm("  PUSH 7\n  STORE 0\n  CALL f\n  LOAD 0\n  HALT\n"
                 "f:\n  LOAD 0\n  PUSH 1\n  STORE 0\n  RET")
        # callee saw a fresh zero slot; caller's slot survived
        assert vm.stack == [0, 7]

    def test_local_addresses(self):
        vm = _vm("  PUSH 3\n  SYSCALL GET_LOCAL_ADDR\n  HALT")
        assert vm.stack == [LOCAL_BASE + 3]

    def test_breakpoint_and_resume(self):
        vm = NVM(_asm("  NOP\n  PUSH 1\n  HALT"))
        vm.add_breakpoint(5)
        assert vm.run() == StopReason.BREAK
        assert vm.pc == 5
        assert vm.run() == StopReason.HALT
        assert vm.stack == [1]

    def test_trace(self):
        vm = NVM(_asm("  PUSH 1\n  HALT"), trace=True)
        vm.run()
        assert vm.trace_output[0].startswith("0004: PUSH32")
