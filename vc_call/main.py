from __future__ import annotations

import argparse
import os
import sys

from .logging_config import setup_logging


DEFAULT_SERVER_URL = "ws://127.0.0.1:8765/ws"


def build_parser() -> argparse.ArgumentParser:
	env = os.environ
	parser = argparse.ArgumentParser(prog="vc-call", description="One-to-one voice/video calls")
	parser.add_argument("--server-url", default=env.get("VC_SERVER_URL", DEFAULT_SERVER_URL), help="signaling WebSocket URL (VC_SERVER_URL)")
	parser.add_argument("--user-id", default=env.get("VC_USER_ID", env.get("USER", "")), help="id other users call you by (VC_USER_ID)")
	parser.add_argument("--name", default=env.get("VC_NAME", ""), help="display name shown to callees (VC_NAME)")
	parser.add_argument(
		"--log-level",
		default=None,
		help="debug, info, warning or error; falls back to VC_CALL_LOG_LEVEL, then VC_LOG_LEVEL",
	)
	return parser


def main(argv: list[str] | None = None) -> int:
	args = build_parser().parse_args(argv)
	setup_logging(args.log_level)

	# Qt and aiortc are heavy imports; keep --help fast.
	try:
		from .ui.app import AppConfig, VCCallApp, create_qt_app
	except ImportError as e:
		print(f"vc-call: cannot load the call window: {e}", file=sys.stderr)
		print("Install the client with: pip install -e .", file=sys.stderr)
		return 2

	qt_app = create_qt_app()
	app = VCCallApp(AppConfig(server_url=args.server_url, user_id=args.user_id, name=args.name or args.user_id))
	qt_app.aboutToQuit.connect(app.shutdown)
	app.start()
	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
