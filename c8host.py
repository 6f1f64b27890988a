import logging
import time

import pygame

from c8core import HEIGHT, WIDTH, MachineState, SourceUnavailable

logger = logging.getLogger(__name__)

FPS_TARGET = 60
INSTR_PER_FRAME = 11  # 11 is a good default
DEFAULT_SCALE = 24

PIXEL_COLOR = (255, 165, 0)  # orange
BACKGROUND_COLOR = (0, 0, 0)

# key mapping for Chip-8 keys
KEY_MAPPING = {
    pygame.K_1: 0x1,
    pygame.K_2: 0x2,
    pygame.K_3: 0x3,
    pygame.K_4: 0xC,
    pygame.K_q: 0x4,
    pygame.K_w: 0x5,
    pygame.K_e: 0x6,
    pygame.K_r: 0xD,
    pygame.K_a: 0x7,
    pygame.K_s: 0x8,
    pygame.K_d: 0x9,
    pygame.K_f: 0xE,
    pygame.K_z: 0xA,
    pygame.K_x: 0x0,
    pygame.K_c: 0xB,
    pygame.K_v: 0xF,
}


def load_rom(rom_file):
    """Read a ROM image from disk as raw bytes."""
    try:
        with open(rom_file, "rb") as f:
            rom = f.read()
    except OSError as e:
        raise SourceUnavailable(rom_file, e) from e

    logger.info("read %d bytes from %s", len(rom), rom_file)
    return rom


class PygameHost:
    """Window, keyboard and beep collaborator for an Interpreter."""

    def __init__(self, scale=DEFAULT_SCALE):
        self.running = True
        self.scale = scale

        # pygame setup
        pygame.init()
        self.screen = pygame.display.set_mode((WIDTH * scale, HEIGHT * scale))

    def close(self):
        pygame.quit()

    def handle_input(self, keys):
        """Poll window events and write the hex keypad state into ``keys``."""
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.running = False
            elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                self.running = False

        pressed = pygame.key.get_pressed()
        for key, chip_key in KEY_MAPPING.items():
            keys[chip_key] = 1 if pressed[key] else 0

    def draw_to_screen(self, pixels):
        scale = self.scale
        screen = self.screen

        # clear screen
        screen.fill(BACKGROUND_COLOR)

        for y in range(HEIGHT):
            row_base = y * WIDTH
            py = y * scale
            for x in range(WIDTH):
                if pixels[row_base + x]:
                    screen.fill(PIXEL_COLOR, (x * scale, py, scale, scale))

        pygame.display.flip()

    def set_caption(self, caption):
        pygame.display.set_caption(caption)

    def beep(self):
        print("\a", end="", flush=True)


def run_frame(interpreter, host, instructions_per_frame=INSTR_PER_FRAME):
    """Advance the machine by one host frame; returns the number of steps run.

    Timers tick once per step, so the frame keeps stepping while the
    machine waits for a key; a key press is seen after the next input poll.
    Stepping stops early only once the machine has halted.
    """
    host.handle_input(interpreter.keys)

    steps = 0
    beep = False
    for _ in range(instructions_per_frame):
        result = interpreter.step()
        steps += 1
        beep = beep or result.beep
        if result.state is MachineState.HALTED:
            break

    if beep:
        host.beep()

    if interpreter.draw_flag:
        host.draw_to_screen(interpreter.framebuffer())
        interpreter.draw_flag = False

    return steps


def run(interpreter, host, system_info, instructions_per_frame=INSTR_PER_FRAME):
    frame_time_target = 1 / FPS_TARGET

    system_info = system_info + " | IPF: {}".format(instructions_per_frame)
    last_title_update = time.time()

    while host.running:
        start_time = time.time()

        run_frame(interpreter, host, instructions_per_frame)
        if interpreter.halted:
            logger.info("machine halted, leaving frame loop")
            break

        frame_time = time.time() - start_time
        sleep_time = max(0, frame_time_target - frame_time)
        if sleep_time > 0:
            time.sleep(sleep_time)

        current_time = time.time()
        if current_time - last_title_update >= 2.0:
            real_fps = 1 / (frame_time + sleep_time)
            host.set_caption(
                "{} | FPS: {:.2f} | MIPS: {:.2f}".format(
                    system_info,
                    real_fps,
                    (instructions_per_frame * real_fps) / 1000000,
                )
            )
            last_title_update = current_time
