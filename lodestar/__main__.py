"""
Main entry point for running ``lodestar`` from the command line.

This will load the configuration file and launch a gemini server for every
virtual host that it defines.
"""
# Black does not do a good job of formatting argparse code, IMHO.
# fmt: off
import argparse
import os
import sys

from .__version__ import __version__
from .config import ConfigError, load_config
from .server import GeminiServer

# noinspection PyTypeChecker
parser = argparse.ArgumentParser(
    prog="lodestar",
    description="A Gemini Protocol Server",
    formatter_class=argparse.ArgumentDefaultsHelpFormatter,
)
parser.add_argument(
    "-V", "--version",
    action="version",
    version="lodestar " + __version__
)
parser.add_argument(
    "config",
    help="Python configuration file, see examples/sample_conf.py",
    metavar="FILE",
)


def main():
    args = parser.parse_args()
    server = None
    try:
        config = load_config(args.config)
        server = GeminiServer(config)
        exit_code = server.run()
    except ConfigError as e:
        print(f"critical: {e}", file=sys.stderr)
        if server is not None:
            server.finalize()
        sys.exit(os.EX_CONFIG)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
