import argparse
from .run import run_with_settings
from .config import Settings


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Coordinate pool processes against one node")
    p.add_argument("--rpcurl", default=None)
    p.add_argument("--rpcport", type=int, default=None)
    p.add_argument("--rpcuser", default=None)
    p.add_argument("--rpcpass", default=None)
    p.add_argument("--rpc-timeout", type=float, default=None, help="Seconds")
    p.add_argument("--zmq-endpoint", default=None, help="Node ZMQ endpoint (push mode)")
    p.add_argument(
        "--poll-interval", type=float, default=None, help="Seconds between polls (poll mode)"
    )
    p.add_argument("--process-id", default=None, help="Identity of this process")
    p.add_argument("-v", "--verbose", "--debug", action="store_true", dest="verbose")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    p.add_argument("--enable-database", action="store_true", default=None)
    p.add_argument("--database-path", default=None)
    p.add_argument("--enable-api", action="store_true", default=None)
    p.add_argument("--api-port", type=int, default=None)
    return p.parse_args(argv)


def settings_from_args(args) -> Settings:
    s = Settings()
    for k, v in vars(args).items():
        if v is None:
            continue
        if k == "verbose":
            if v:
                s.verbose = True
                s.log_level = "DEBUG"
            continue
        setattr(s, k, v)
    return s


def main(argv=None):
    s = settings_from_args(parse_args(argv))
    if not s.rpcuser or not s.rpcpass:
        raise SystemExit(
            "Node RPC credentials are required (--rpcuser/--rpcpass or env vars)."
        )
    run_with_settings(s)


if __name__ == "__main__":
    main()
