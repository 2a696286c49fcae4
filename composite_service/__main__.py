"""
Entry point for running a composite service via `python -m composite_service`.

Takes an import string naming the config, in the same "module:attribute"
form uvicorn uses for apps:

    python -m composite_service myproject.services:config
"""

import argparse
import sys

from uvicorn.importer import ImportFromStringError, import_from_string

from .composite import start_composite_service


def main(argv=None):
    """Run the composite service named on the command line."""
    parser = argparse.ArgumentParser(
        prog="composite-service",
        description="Run several programs as one supervised service.",
    )
    parser.add_argument("config", help="Import string of the config, e.g. 'myproject.services:config'")
    parser.add_argument(
        "--app-dir",
        default=".",
        help="Directory added to the module search path (default: current directory)",
    )
    args = parser.parse_args(argv)

    sys.path.insert(0, args.app_dir)
    try:
        config = import_from_string(args.config)
    except ImportFromStringError as e:
        parser.error(str(e))

    start_composite_service(config)


if __name__ == "__main__":
    main()
