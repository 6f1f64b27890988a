import logging
from collections import namedtuple
from enum import Enum
from random import randint

logger = logging.getLogger(__name__)

MEMORY_SIZE = 4096  # 4KB memory
PROGRAM_START = 0x200  # programs are loaded at 0x200
MAX_PROGRAM_SIZE = MEMORY_SIZE - PROGRAM_START
ADDRESS_MASK = 0x0FFF
NUM_REGISTERS = 16
STACK_DEPTH = 16
NUM_KEYS = 16
WIDTH = 64
HEIGHT = 32

# hexadecimal font, 5 bytes per glyph, seeded at 0x000
FONTSET = (
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
)
GLYPH_SIZE = 5


class C8Error(Exception):
    """Base class for interpreter and loader failures."""


class ProgramTooLarge(C8Error):
    def __init__(self, size):
        super().__init__(
            "program is {} bytes, at most {} fit above 0x{:03X}".format(
                size, MAX_PROGRAM_SIZE, PROGRAM_START
            )
        )
        self.size = size


class StackOverflow(C8Error):
    def __init__(self, pc):
        super().__init__("call stack overflow at 0x{:03X}".format(pc))
        self.pc = pc


class StackUnderflow(C8Error):
    def __init__(self, pc):
        super().__init__("return with empty call stack at 0x{:03X}".format(pc))
        self.pc = pc


class SourceUnavailable(C8Error):
    def __init__(self, source, reason):
        super().__init__("cannot read program from {}: {}".format(source, reason))
        self.source = source


class MachineState(Enum):
    RUNNING = "running"
    AWAITING_KEY = "awaiting key"
    HALTED = "halted"


# non-fatal decode diagnostic, pc is the address the word was fetched from
UnknownOpcode = namedtuple("UnknownOpcode", ["opcode", "pc"])

StepResult = namedtuple("StepResult", ["state", "beep", "unknown"])


class Op(Enum):
    """Instruction kinds. Each value is the mnemonic template used by str(Instruction)."""

    CLS = "CLS"
    RET = "RET"
    JP = "JP {nnn:03X}"
    CALL = "CALL {nnn:03X}"
    SE_BYTE = "SE V{x:X}, {nn:02X}"
    SNE_BYTE = "SNE V{x:X}, {nn:02X}"
    SE_REG = "SE V{x:X}, V{y:X}"
    LD_BYTE = "LD V{x:X}, {nn:02X}"
    ADD_BYTE = "ADD V{x:X}, {nn:02X}"
    LD_REG = "LD V{x:X}, V{y:X}"
    OR = "OR V{x:X}, V{y:X}"
    AND = "AND V{x:X}, V{y:X}"
    XOR = "XOR V{x:X}, V{y:X}"
    ADD_REG = "ADD V{x:X}, V{y:X}"
    SUB = "SUB V{x:X}, V{y:X}"
    SHR = "SHR V{x:X}"
    SUBN = "SUBN V{x:X}, V{y:X}"
    SHL = "SHL V{x:X}"
    SNE_REG = "SNE V{x:X}, V{y:X}"
    LD_I = "LD I, {nnn:03X}"
    JP_V0 = "JP V0, {nnn:03X}"
    RND = "RND V{x:X}, {nn:02X}"
    DRW = "DRW V{x:X}, V{y:X}, {n:X}"
    SKP = "SKP V{x:X}"
    SKNP = "SKNP V{x:X}"
    LD_VX_DT = "LD V{x:X}, DT"
    LD_KEY = "LD V{x:X}, K"
    LD_DT = "LD DT, V{x:X}"
    LD_ST = "LD ST, V{x:X}"
    ADD_I = "ADD I, V{x:X}"
    LD_FONT = "LD F, V{x:X}"
    BCD = "LD B, V{x:X}"
    STORE = "LD [I], V{x:X}"
    LOAD = "LD V{x:X}, [I]"
    UNKNOWN = "DW {opcode:04X}"


class Instruction(namedtuple("Instruction", ["op", "opcode", "x", "y", "n", "nn", "nnn"])):
    __slots__ = ()

    def __str__(self):
        return self.op.value.format(**self._asdict())


# families fully selected by the top nibble
_BY_FAMILY = {
    0x1: Op.JP,
    0x2: Op.CALL,
    0x3: Op.SE_BYTE,
    0x4: Op.SNE_BYTE,
    0x6: Op.LD_BYTE,
    0x7: Op.ADD_BYTE,
    0xA: Op.LD_I,
    0xB: Op.JP_V0,
    0xC: Op.RND,
    0xD: Op.DRW,
}

# 0x8XYN, selected by the last nibble
_ARITHMETIC = {
    0x0: Op.LD_REG,
    0x1: Op.OR,
    0x2: Op.AND,
    0x3: Op.XOR,
    0x4: Op.ADD_REG,
    0x5: Op.SUB,
    0x6: Op.SHR,
    0x7: Op.SUBN,
    0xE: Op.SHL,
}

# 0xEXNN, selected by the low byte
_KEYS = {
    0x9E: Op.SKP,
    0xA1: Op.SKNP,
}

# 0xFXNN, selected by the low byte
_MISC = {
    0x07: Op.LD_VX_DT,
    0x0A: Op.LD_KEY,
    0x15: Op.LD_DT,
    0x18: Op.LD_ST,
    0x1E: Op.ADD_I,
    0x29: Op.LD_FONT,
    0x33: Op.BCD,
    0x55: Op.STORE,
    0x65: Op.LOAD,
}


def decode(opcode):
    """Split a 16-bit instruction word into its kind and operand fields.

    Words that match no documented instruction (including 0NNN machine
    calls) decode to ``Op.UNKNOWN``.
    """
    family = (opcode & 0xF000) >> 12
    n = opcode & 0x000F
    nn = opcode & 0x00FF

    if opcode == 0x00E0:
        op = Op.CLS
    elif opcode == 0x00EE:
        op = Op.RET
    elif family in _BY_FAMILY:
        op = _BY_FAMILY[family]
    elif family == 0x5 and n == 0:
        op = Op.SE_REG
    elif family == 0x8:
        op = _ARITHMETIC.get(n, Op.UNKNOWN)
    elif family == 0x9 and n == 0:
        op = Op.SNE_REG
    elif family == 0xE:
        op = _KEYS.get(nn, Op.UNKNOWN)
    elif family == 0xF:
        op = _MISC.get(nn, Op.UNKNOWN)
    else:
        op = Op.UNKNOWN

    return Instruction(
        op=op,
        opcode=opcode,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=n,
        nn=nn,
        nnn=opcode & 0x0FFF,
    )


class Interpreter:
    """CHIP-8 machine state plus the fetch-decode-execute cycle.

    The host owns pacing: every call to :meth:`step` runs one instruction
    and decrements both timers once. Between steps the host may update
    :attr:`keys` and read :meth:`framebuffer` when :attr:`draw_flag` is set,
    clearing the flag after it has rendered.

    ``increment_index_on_load_store`` selects the FX55/FX65 behaviour:
    when true, I is left pointing just past the last register copied.
    """

    def __init__(self, rng=None, increment_index_on_load_store=True):
        self.rng = rng if rng is not None else (lambda: randint(0, 255))
        self.increment_index_on_load_store = increment_index_on_load_store
        self.reset()

    def reset(self):
        self.memory = bytearray(MEMORY_SIZE)
        self.memory[: len(FONTSET)] = bytes(FONTSET)
        self.V = [0] * NUM_REGISTERS  # registers
        self.I = 0  # index register
        self.pc = PROGRAM_START
        self.stack = [0] * STACK_DEPTH  # return addresses
        self.sp = 0
        self.delay_timer = 0
        self.sound_timer = 0
        self.gfx = bytearray(WIDTH * HEIGHT)  # graphics
        self.draw_flag = False
        self.keys = [0] * NUM_KEYS  # keypad with 16 keys, written by the host
        self.state = MachineState.RUNNING

        # FX0A bookkeeping: target register and keys held at the last poll
        self._key_register = 0
        self._held_keys = frozenset()
        logger.debug("machine reset")

    @property
    def halted(self):
        return self.state is MachineState.HALTED

    def load_program(self, data):
        """Copy ``data`` verbatim into memory at 0x200 and return its length.

        Registers, pc and timers are untouched; call :meth:`reset` first
        to start a fresh program.
        """
        data = bytes(data)
        if len(data) > MAX_PROGRAM_SIZE:
            raise ProgramTooLarge(len(data))

        self.memory[PROGRAM_START : PROGRAM_START + len(data)] = data
        logger.info("loaded %d byte program at 0x%03X", len(data), PROGRAM_START)
        return len(data)

    def framebuffer(self):
        """Read-only snapshot of the 64x32 pixels, row-major, one byte (0/1) each."""
        return bytes(self.gfx)

    def fetch(self):
        memory = self.memory
        pc = self.pc
        return (memory[pc & ADDRESS_MASK] << 8) | memory[(pc + 1) & ADDRESS_MASK]

    def step(self):
        """Run one machine cycle and report what the host needs to know."""
        if self.state is MachineState.HALTED:
            return StepResult(self.state, False, None)

        unknown = None
        if self.state is MachineState.AWAITING_KEY:
            self._poll_keys()
        else:
            unknown = self._execute(decode(self.fetch()))

        beep = self._update_timers()
        return StepResult(self.state, beep, unknown)

    def _execute(self, instruction):
        # use local references, the register file and memory are mutated in place
        op = instruction.op
        x = instruction.x
        y = instruction.y
        V = self.V
        memory = self.memory
        address = self.pc
        pc = (address + 2) & ADDRESS_MASK
        I = self.I
        logger.debug("%03X  %s", address, instruction)

        if op is Op.DRW:
            # check most expensive instruction first
            self._draw_sprite(V[x], V[y], instruction.n)

        elif op is Op.SNE_BYTE:
            if V[x] != instruction.nn:
                pc += 2

        elif op is Op.ADD_BYTE:
            V[x] = (V[x] + instruction.nn) & 0xFF

        elif op is Op.CLS:
            self.gfx[:] = bytes(WIDTH * HEIGHT)
            self.draw_flag = True

        elif op is Op.RET:
            if self.sp == 0:
                self._fault(StackUnderflow(address))
            self.sp -= 1
            pc = self.stack[self.sp]

        elif op is Op.JP:
            pc = instruction.nnn

        elif op is Op.CALL:
            if self.sp == STACK_DEPTH:
                self._fault(StackOverflow(address))
            self.stack[self.sp] = pc
            self.sp += 1
            pc = instruction.nnn

        elif op is Op.SE_BYTE:
            if V[x] == instruction.nn:
                pc += 2

        elif op is Op.SE_REG:
            if V[x] == V[y]:
                pc += 2

        elif op is Op.LD_BYTE:
            V[x] = instruction.nn

        elif op is Op.LD_REG:
            V[x] = V[y]

        elif op is Op.OR:
            V[x] |= V[y]

        elif op is Op.AND:
            V[x] &= V[y]

        elif op is Op.XOR:
            V[x] ^= V[y]

        # flag-setting arithmetic: operands are copied first and VF is
        # written last, so VF as an operand or destination reads the old value
        elif op is Op.ADD_REG:
            vx, vy = V[x], V[y]
            total = vx + vy
            V[x] = total & 0xFF
            V[0xF] = 1 if total > 0xFF else 0

        elif op is Op.SUB:
            vx, vy = V[x], V[y]
            V[x] = (vx - vy) & 0xFF
            V[0xF] = 1 if vx >= vy else 0

        elif op is Op.SHR:
            vx = V[x]
            V[x] = vx >> 1
            V[0xF] = vx & 0x01

        elif op is Op.SUBN:
            vx, vy = V[x], V[y]
            V[x] = (vy - vx) & 0xFF
            V[0xF] = 1 if vy >= vx else 0

        elif op is Op.SHL:
            vx = V[x]
            V[x] = (vx << 1) & 0xFF
            V[0xF] = vx >> 7

        elif op is Op.SNE_REG:
            if V[x] != V[y]:
                pc += 2

        elif op is Op.LD_I:
            I = instruction.nnn

        elif op is Op.JP_V0:
            pc = instruction.nnn + V[0]

        elif op is Op.RND:
            V[x] = self.rng() & instruction.nn

        elif op is Op.SKP:
            if self.keys[V[x] & 0xF]:
                pc += 2

        elif op is Op.SKNP:
            if not self.keys[V[x] & 0xF]:
                pc += 2

        elif op is Op.LD_VX_DT:
            V[x] = self.delay_timer

        elif op is Op.LD_KEY:
            # suspend until the host reports a newly pressed key
            self._key_register = x
            self._held_keys = self._pressed_keys()
            self.state = MachineState.AWAITING_KEY
            pc = address

        elif op is Op.LD_DT:
            self.delay_timer = V[x]

        elif op is Op.LD_ST:
            self.sound_timer = V[x]

        elif op is Op.ADD_I:
            total = I + V[x]
            I = total & ADDRESS_MASK
            V[0xF] = 1 if total > ADDRESS_MASK else 0

        elif op is Op.LD_FONT:
            I = V[x] * GLYPH_SIZE  # font starts at 0x000

        elif op is Op.BCD:
            vx = V[x]
            memory[I] = vx // 100  # hundreds
            memory[(I + 1) & ADDRESS_MASK] = (vx // 10) % 10  # tens
            memory[(I + 2) & ADDRESS_MASK] = vx % 10  # ones

        elif op is Op.STORE:
            for offset in range(x + 1):
                memory[(I + offset) & ADDRESS_MASK] = V[offset]
            if self.increment_index_on_load_store:
                I += x + 1

        elif op is Op.LOAD:
            for offset in range(x + 1):
                V[offset] = memory[(I + offset) & ADDRESS_MASK]
            if self.increment_index_on_load_store:
                I += x + 1

        else:
            logger.warning("unknown opcode %04X at 0x%03X", instruction.opcode, address)
            self.pc = pc
            return UnknownOpcode(instruction.opcode, address)

        # write back state of primitive local variables
        self.pc = pc & ADDRESS_MASK
        self.I = I & ADDRESS_MASK
        return None

    def _fault(self, error):
        self.state = MachineState.HALTED
        logger.error("%s, machine halted", error)
        raise error

    def _pressed_keys(self):
        return frozenset(key for key in range(NUM_KEYS) if self.keys[key])

    def _poll_keys(self):
        pressed = self._pressed_keys()
        fresh = sorted(pressed - self._held_keys)
        if fresh:
            self.V[self._key_register] = fresh[0]
            self.pc = (self.pc + 2) & ADDRESS_MASK
            self.state = MachineState.RUNNING
        else:
            # a key released during the wait counts when pressed again
            self._held_keys = pressed

    def _draw_sprite(self, x, y, n):
        gfx = self.gfx
        mem = self.memory
        I = self.I

        collision = 0
        x %= WIDTH
        y %= HEIGHT

        for row in range(n):
            sprite_byte = mem[(I + row) & ADDRESS_MASK]
            if not sprite_byte:
                continue
            y_coord = ((y + row) % HEIGHT) * WIDTH

            for col in range(8):
                if (sprite_byte >> (7 - col)) & 1:
                    index = y_coord + (x + col) % WIDTH
                    collision |= gfx[index]
                    gfx[index] ^= 1

        self.V[0xF] = 1 if collision else 0
        self.draw_flag = True

    def _update_timers(self):
        """Decrement both timers; True when the sound timer just ran out."""
        if self.delay_timer > 0:
            self.delay_timer -= 1

        if self.sound_timer > 0:
            self.sound_timer -= 1
            return self.sound_timer == 0
        return False
