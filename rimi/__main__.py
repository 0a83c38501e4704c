# rimi/__main__.py

import argparse
import logging
import sys
from .errors import RimiError
from .importance import rimi

logger = logging.getLogger("rimi")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="rimi",
        description="Relative importance of main and two-way interaction effects in a neural network"
    )
    parser.add_argument(
        "data",
        help="CSV file with a header row; the last column is the output"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        summary = rimi(args.data)
    except RimiError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    print(summary.to_string())
    return 0


if __name__ == "__main__":
    sys.exit(main())
