"""Entry point for GigaView viewer."""

import logging
import sys

from gigaview.ui.app import run_app


def main() -> int:
    """Run the GigaView viewer application."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    return run_app(sys.argv)


if __name__ == "__main__":
    sys.exit(main())
