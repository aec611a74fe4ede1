import argparse
import asyncio
import logging
from pathlib import Path

from . import crypto
from .agent import Agent
from .config import load_config

"""
run_agent.py — single entry point for the control-plane agent.

What you can do here:
- run:          connect to the control plane and serve commands (default)
- derive-name:  print the scratch file name a transfer would use, handy when
                cleaning up <appRoot>/.tmp by hand
"""


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run_agent(args: argparse.Namespace) -> None:
    """Build the agent from config + flags and serve until retries run out."""
    config = load_config(
        path=args.config,
        url=args.url,
        app_id=args.app_id,
        secret_key=args.secret_key,
        name=args.name,
        environment=args.env,
        app_root=args.app_root,
        channel=args.channel,
    )
    agent = Agent(config)
    try:
        await agent.run()
    finally:
        await agent.stop()


def parse_args(argv=None) -> argparse.Namespace:
    """
    Quick examples:
      Agent:        python -m saaslink.run_agent --url http://127.0.0.1:1337 --app-id demo
      With config:  python -m saaslink.run_agent --config ./config/saas.json
      Debug name:   python -m saaslink.run_agent derive-name <fileToken> <sessionToken>
    """
    p = argparse.ArgumentParser(prog="saaslink-agent")
    p.add_argument("--config", type=Path, help="JSON config file")
    p.add_argument("--url", help="Control plane base URL")
    p.add_argument("--app-id")
    p.add_argument("--secret-key")
    p.add_argument("--name", help="Application name")
    p.add_argument("--env", help="Environment (development enables debug fields)")
    p.add_argument("--app-root", type=Path, help="Application root (scratch dir lives here)")
    p.add_argument("--channel", help="Event channel host:port (defaults to the url's)")
    p.add_argument("--log-level", default="INFO")

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("derive-name")
    sp.add_argument("file_token")
    sp.add_argument("session_token")

    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    if args.command == "derive-name":
        print(crypto.derive_artifact_name(args.file_token, args.session_token) + ".zip")
        return

    configure_logging(args.log_level)
    try:
        asyncio.run(run_agent(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
