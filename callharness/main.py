from __future__ import annotations

import argparse
import asyncio
import sys

from .app import HarnessApp, HarnessConfig
from .logging_config import setup_logging


def main(argv: list[str] | None = None) -> int:
	env = HarnessConfig.from_env()
	parser = argparse.ArgumentParser(description="call signaling test harness")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use CALLHARNESS_LOG_LEVEL.",
	)
	parser.add_argument("--ws-url", default=env.ws_url, help="STOMP WebSocket URL")
	parser.add_argument("--api-base", default=env.api_base, help="Base URL of the REST API")
	parser.add_argument("--token", default=env.token, help="Bearer token (JWT)")
	parser.add_argument("--me", default=env.me, help="Own user id, as the backend knows it")
	parser.add_argument("--peer", default=env.peer, help="Default peer user id")
	parser.add_argument("--call-id", default=env.call_id, help="Use this call id instead of creating one over REST")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	cfg = HarnessConfig(
		ws_url=args.ws_url,
		api_base=args.api_base,
		token=args.token,
		me=args.me,
		peer=args.peer,
		call_id=args.call_id,
	)
	if not cfg.me:
		print("Own user id is required (--me or CALLHARNESS_ME)")
		return 2

	app = HarnessApp(cfg)
	try:
		asyncio.run(app.run())
	except KeyboardInterrupt:
		pass
	return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
