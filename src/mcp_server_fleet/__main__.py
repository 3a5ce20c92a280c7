import argparse


def main():
    parser = argparse.ArgumentParser(description="Agent Fleet MCP Server")
    parser.add_argument("--config", type=str, default=None, help="Path to fleet.yaml")
    parser.add_argument("--data-dir", type=str, default=None, help="Fleet data directory")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default WARNING)")
    args = parser.parse_args()

    from .runtime.common import configure_logging
    from .runtime.config import load_settings
    from .runtime.manager import AgentManager
    from .server import build_server

    overrides = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = load_settings(args.config, **overrides)
    configure_logging(settings.log_level)

    manager = AgentManager(settings).start()
    try:
        build_server(manager).run()
    finally:
        manager.shutdown()


if __name__ == "__main__":
    main()
