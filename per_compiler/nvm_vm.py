"""
NVM reference interpreter.

Runs an NVM image produced by the NVM backend so its behaviour can be
checked without a NovariaOS host.

Execution model:
  1. Fetch the opcode at pc (execution starts at offset 4, after "NVM0")
  2. Fetch its operand bytes and advance pc
  3. Dispatch to the handler, which updates the operand stack, the frames
     or memory
  4. Count the step and check termination conditions

State:
  - one operand stack of signed 32-bit words, shared by all calls
  - a call stack: CALL32 pushes (return pc, fresh 256-slot frame),
    RET pops it; RET with nothing to return to halts
  - sparse absolute memory (word per address); VGA text memory starts
    at 0xB8000
  - local slots are also reachable through absolute addresses handed out
    by GET_LOCAL_ADDR: LOCAL_BASE + depth * 256 + slot

Termination reasons:
  - HALT:     HALT instruction, or RET from the outermost frame
  - EXIT:     EXIT syscall (exit_code holds the status)
  - BREAK:    BREAK instruction or breakpoint address hit
  - TIMEOUT:  max_steps exceeded
  - ILLEGAL:  undefined opcode
  - ERROR:    stack underflow, division by zero, bad jump, unsupported syscall
"""

from __future__ import annotations
import logging
import struct
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from .nvm import MAGIC, OPERAND_SIZES, SLOT_COUNT, SYSCALL_EFFECTS, Op, Syscall
from .symbols import CAP_CONSTANTS

log = logging.getLogger(__name__)

LOCAL_BASE = 0x7F000000
VGA_BASE = 0xB8000


class StopReason(Enum):
    TIMEOUT = 'TIMEOUT'
    BREAK = 'BREAK'
    HALT = 'HALT'
    EXIT = 'EXIT'
    ILLEGAL = 'ILLEGAL'
    ERROR = 'ERROR'


class VMError(Exception):
    """A runtime fault inside the interpreted program."""


def wrap32(value: int) -> int:
    """Reduce to a signed 32-bit word."""
    return ((value + 0x80000000) & 0xFFFFFFFF) - 0x80000000


def _div_trunc(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


class NVM:
    """Novaria VM interpreter.

    Usage:
        vm = NVM(image)
        reason = vm.run()
        print(vm.output.decode())
    """

    DEFAULT_MAX_STEPS = 10_000_000

    def __init__(self, image: bytes, capabilities: int = CAP_CONSTANTS["CAP_ALL"],
                 trace: bool = False):
        if image[:4] != MAGIC:
            raise VMError("not an NVM image (missing NVM0 magic)")
        self.image = bytes(image)
        self.pc = len(MAGIC)
        self.stack: List[int] = []
        self.frames: List[List[int]] = [[0] * SLOT_COUNT]
        self.returns: List[int] = []
        self.memory: Dict[int, int] = {}
        self.steps = 0

        # Host state
        self.output = bytearray()
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None
        self.capabilities = capabilities
        self.ports: Dict[int, int] = {}
        self.port_writes: List[Tuple[int, int]] = []
        self.inbox: List[int] = []
        self.sent: List[Tuple[int, int]] = []

        self._breakpoints: Set[int] = set()
        self._resume_pc: Optional[int] = None
        self.stop_reason: Optional[StopReason] = None
        self._trace = trace
        self.trace_output: List[str] = []
        self._dispatch = self._build_dispatch()
        self._syscalls = self._build_syscalls()

    def add_breakpoint(self, offset: int):
        self._breakpoints.add(offset)

    # ══════════════════════════════════════════════
    # Execution
    # ══════════════════════════════════════════════

    def step(self) -> Optional[StopReason]:
        """Execute one instruction. Returns StopReason if stopped, else None."""
        pc = self.pc
        if pc in self._breakpoints and pc != self._resume_pc:
            self._resume_pc = pc
            return StopReason.BREAK
        self._resume_pc = None
        if not 0 <= pc < len(self.image):
            self.error = f"pc {pc:#x} outside the image"
            return StopReason.ERROR

        try:
            op = Op(self.image[pc])
        except ValueError:
            self.error = f"illegal opcode {self.image[pc]:#04x} at {pc:#06x}"
            return StopReason.ILLEGAL

        size = OPERAND_SIZES[op]
        operand = self.image[pc + 1:pc + 1 + size]
        if len(operand) != size:
            self.error = f"truncated {op.name} at {pc:#06x}"
            return StopReason.ERROR
        self.pc = pc + 1 + size
        self.steps += 1

        if self._trace:
            self.trace_output.append(f"{pc:04x}: {op.name:<10} {self.stack[-4:]}")

        try:
            return self._dispatch[op](operand)
        except VMError as e:
            self.error = f"{e} (at {pc:#06x})"
            log.debug("nvm_vm: %s", self.error)
            return StopReason.ERROR

    def run(self, max_steps: Optional[int] = None) -> StopReason:
        """Run until a termination condition."""
        if max_steps is None:
            max_steps = self.DEFAULT_MAX_STEPS
        reason = None
        while reason is None and self.steps < max_steps:
            reason = self.step()
        self.stop_reason = reason or StopReason.TIMEOUT
        return self.stop_reason

    # ══════════════════════════════════════════════
    # Stack, frames and memory
    # ══════════════════════════════════════════════

    def push(self, value: int):
        self.stack.append(wrap32(value))

    def pop(self) -> int:
        if not self.stack:
            raise VMError("operand stack underflow")
        return self.stack.pop()

    def _pop2(self) -> Tuple[int, int]:
        """(next, top)"""
        b = self.pop()
        a = self.pop()
        return a, b

    def local_address(self, slot: int) -> int:
        return LOCAL_BASE + (len(self.frames) - 1) * SLOT_COUNT + slot

    def _frame_slot(self, address: int) -> Optional[Tuple[int, int]]:
        offset = address - LOCAL_BASE
        if 0 <= offset < len(self.frames) * SLOT_COUNT:
            return divmod(offset, SLOT_COUNT)
        return None

    def read_word(self, address: int) -> int:
        where = self._frame_slot(address)
        if where is not None:
            depth, slot = where
            return self.frames[depth][slot]
        return self.memory.get(address, 0)

    def write_word(self, address: int, value: int):
        where = self._frame_slot(address)
        if where is not None:
            depth, slot = where
            self.frames[depth][slot] = wrap32(value)
        else:
            self.memory[address] = wrap32(value)

    def _jump_target(self, operand: bytes) -> int:
        target = struct.unpack(">I", operand)[0]
        if not len(MAGIC) <= target < len(self.image):
            raise VMError(f"jump target {target:#x} outside the image")
        return target

    # ══════════════════════════════════════════════
    # Instruction handlers
    # ══════════════════════════════════════════════

    def _build_dispatch(self) -> Dict[Op, Callable[[bytes], Optional[StopReason]]]:
        return {
            Op.HALT: lambda _: StopReason.HALT,
            Op.NOP: lambda _: None,
            Op.BREAK: lambda _: StopReason.BREAK,
            Op.PUSH32: self._op_push,
            Op.POP: self._op_pop,
            Op.DUP: self._op_dup,
            Op.SWAP: self._op_swap,
            Op.ADD: self._binary(lambda a, b: a + b),
            Op.SUB: self._binary(lambda a, b: a - b),
            Op.MUL: self._binary(lambda a, b: a * b),
            Op.DIV: self._binary(self._div),
            Op.MOD: self._binary(self._mod),
            Op.CMP: self._binary(lambda a, b: (a > b) - (a < b)),
            Op.EQ: self._binary(lambda a, b: int(a == b)),
            Op.NEQ: self._binary(lambda a, b: int(a != b)),
            Op.GT: self._binary(lambda a, b: int(a > b)),
            Op.LT: self._binary(lambda a, b: int(a < b)),
            Op.JMP32: self._op_jmp,
            Op.JZ32: self._op_jz,
            Op.JNZ32: self._op_jnz,
            Op.CALL32: self._op_call,
            Op.RET: self._op_ret,
            Op.LOAD: self._op_load,
            Op.STORE: self._op_store,
            Op.LOAD_ABS: self._op_load_abs,
            Op.STORE_ABS: self._op_store_abs,
            Op.SYSCALL: self._op_syscall,
        }

    def _binary(self, fn: Callable[[int, int], int]):
        def handler(_operand: bytes):
            a, b = self._pop2()
            self.push(fn(a, b))
        return handler

    @staticmethod
    def _div(a: int, b: int) -> int:
        if b == 0:
            raise VMError("division by zero")
        return _div_trunc(a, b)

    @staticmethod
    def _mod(a: int, b: int) -> int:
        if b == 0:
            raise VMError("division by zero")
        return a - b * _div_trunc(a, b)

    def _op_push(self, operand: bytes):
        self.push(struct.unpack(">i", operand)[0])

    def _op_pop(self, _operand: bytes):
        self.pop()

    def _op_dup(self, _operand: bytes):
        value = self.pop()
        self.push(value)
        self.push(value)

    def _op_swap(self, _operand: bytes):
        a, b = self._pop2()
        self.push(b)
        self.push(a)

    def _op_jmp(self, operand: bytes):
        self.pc = self._jump_target(operand)

    def _op_jz(self, operand: bytes):
        target = self._jump_target(operand)
        if self.pop() == 0:
            self.pc = target

    def _op_jnz(self, operand: bytes):
        target = self._jump_target(operand)
        if self.pop() != 0:
            self.pc = target

    def _op_call(self, operand: bytes):
        target = self._jump_target(operand)
        self.returns.append(self.pc)
        self.frames.append([0] * SLOT_COUNT)
        self.pc = target

    def _op_ret(self, _operand: bytes):
        if not self.returns:
            return StopReason.HALT
        self.pc = self.returns.pop()
        self.frames.pop()

    def _op_load(self, operand: bytes):
        self.push(self.frames[-1][operand[0]])

    def _op_store(self, operand: bytes):
        self.frames[-1][operand[0]] = self.pop()

    def _op_load_abs(self, _operand: bytes):
        self.push(self.read_word(self.pop()))

    def _op_store_abs(self, _operand: bytes):
        address = self.pop()
        value = self.pop()
        self.write_word(address, value)

    # ══════════════════════════════════════════════
    # Host calls
    # ══════════════════════════════════════════════

    def _build_syscalls(self) -> Dict[Syscall, Callable[[List[int]], Optional[int]]]:
        return {
            Syscall.EXIT: self._sys_exit,
            Syscall.PRINT: self._sys_print,
            Syscall.PORT_IN: self._sys_port_in,
            Syscall.PORT_OUT: self._sys_port_out,
            Syscall.CAP_CHECK: self._sys_cap_check,
            Syscall.MSG_SEND: self._sys_msg_send,
            Syscall.MSG_RECEIVE: self._sys_msg_receive,
            Syscall.GET_LOCAL_ADDR: lambda args: self.local_address(args[0]),
        }

    def _op_syscall(self, operand: bytes):
        try:
            number = Syscall(operand[0])
        except ValueError:
            raise VMError(f"unknown syscall {operand[0]:#04x}")
        handler = self._syscalls.get(number)
        if handler is None:
            raise VMError(f"syscall {number.name} is not provided by this host")

        # Arguments come off the stack in call order: first argument on top
        n_args, n_results = SYSCALL_EFFECTS[number]
        args = [self.pop() for _ in range(n_args)]
        if number == Syscall.EXIT:
            handler(args)
            return StopReason.EXIT
        result = handler(args)
        if n_results:
            self.push(result)

    def _sys_exit(self, args: List[int]):
        self.exit_code = args[0]

    def _sys_print(self, args: List[int]):
        self.output.append(args[0] & 0xFF)

    def _sys_port_in(self, args: List[int]) -> int:
        return self.ports.get(args[0], 0) & 0xFF

    def _sys_port_out(self, args: List[int]):
        port, value = args
        self.ports[port] = value & 0xFF
        self.port_writes.append((port, value & 0xFF))

    def _sys_cap_check(self, args: List[int]) -> int:
        return int((self.capabilities & args[0]) == args[0])

    def _sys_msg_send(self, args: List[int]) -> int:
        self.sent.append((args[0], args[1]))
        return 0

    def _sys_msg_receive(self, args: List[int]) -> int:
        return self.inbox.pop(0) if self.inbox else 0

    # ══════════════════════════════════════════════
    # Inspection
    # ══════════════════════════════════════════════

    def vga_text(self, cells: int = 80) -> str:
        """Characters written to the first `cells` VGA text cells (low byte of each word)."""
        return "".join(chr(self.memory.get(VGA_BASE + i, 0) & 0xFF or 0x20)
                       for i in range(cells)).rstrip()


def execute(image: bytes, max_steps: Optional[int] = None, **kwargs) -> NVM:
    """Run an image to completion and return the finished interpreter."""
    vm = NVM(image, **kwargs)
    reason = vm.run(max_steps)
    log.debug("nvm_vm: stopped with %s after %d steps", reason.name, vm.steps)
    return vm
