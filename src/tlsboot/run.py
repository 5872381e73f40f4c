#!/usr/bin/env python
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from src.tlsboot.cli import main as cli_main, setup_logging


def main() -> int:
    # TLSBOOT_CONFIG_FILE 等通过 os.environ 读取，需要先把 .env 载入进程环境
    load_dotenv(Path.cwd() / ".env")
    setup_logging(os.getenv("TLSBOOT_LOG_LEVEL", "INFO"))
    logger.debug("tlsboot, start running!")
    return cli_main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
