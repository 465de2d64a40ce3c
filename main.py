import sys

from davgate.config import ConfigError, load_access, load_config
from davgate.core import DavGate
from davgate.engine import build_engine
from davgate.handlers import HandlerCache
from davgate.logger import GateLogger
from davgate.server import run_server


def main():
    try:
        config = load_config()
        logger = GateLogger(config.log_path, config.log_level)
        access = load_access(config)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    app = DavGate(access, HandlerCache(build_engine, logger), logger)
    try:
        run_server(config, app, logger)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
