import argparse
import logging
import sys

from cpuinfo import get_cpu_info

from c8core import C8Error, Interpreter
from c8host import DEFAULT_SCALE, PygameHost, load_rom, run

logger = logging.getLogger(__name__)


def main(rom_file, system_info, scale=DEFAULT_SCALE):
    interpreter = Interpreter()
    interpreter.load_program(load_rom(rom_file))

    host = PygameHost(scale)
    try:
        run(interpreter, host, system_info)
    finally:
        host.close()


def cli(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("rom", help="ROM image to run")
    parser.add_argument(
        "--scale",
        type=int,
        default=DEFAULT_SCALE,
        metavar="N",
        help="pixel scale factor for the window (default: {})".format(DEFAULT_SCALE),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging verbosity (default: WARNING)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s]:  %(message)s",
        stream=sys.stdout,
    )

    system_info = "Python: {} | CPU: {}".format(
        sys.version.split()[0],
        get_cpu_info().get("brand_raw", "Unknown CPU"),
    )

    try:
        main(args.rom, system_info, args.scale)
    except C8Error as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(cli())
