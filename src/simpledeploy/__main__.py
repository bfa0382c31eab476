"""CLI entrypoints for the agent (serve, check-config, websites)."""

from __future__ import annotations

import argparse
import json
import sys

from simpledeploy.core.exceptions import ConfigurationError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="simpledeploy", description="SimpleDeploy deployment agent")
    parser.add_argument("-c", "--config", help="Path to a YAML configuration file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("serve", help="Run the agent (default)")
    sub.add_parser("check-config", help="Validate configuration and print the effective settings")
    sub.add_parser("websites", help="List websites known to the configured webserver")

    args = parser.parse_args(argv)

    from simpledeploy.core.config import load_settings

    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    if args.cmd == "check-config":
        effective = settings.model_dump(mode="json")
        for key in ("password", "auth_token"):
            if effective.get(key):
                effective[key] = "[REDACTED]"
        print(json.dumps(effective, indent=2))
        return 0

    if args.cmd == "websites":
        from simpledeploy.utils.logging import setup_logging
        from simpledeploy.webserver.factory import create_webserver_control

        setup_logging(settings.log_level, settings.log_format)
        try:
            control = create_webserver_control(settings.webserver)
        except ConfigurationError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 2
        for site in control.list_websites():
            print(f"{site.id}\t{site.name}\t{site.state}\t{site.physical_path}\t{site.bindings}")
        return 0

    from simpledeploy.main import run

    run(args.config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
