"""
入口转发

  - 包名: beacon_position_server
  - CLI: beacon-position-server

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `beacon_position_server.cli:main`。
"""

import sys

from beacon_position_server.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
