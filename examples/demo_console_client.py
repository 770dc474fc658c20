"""Demo client that sends one line to the engine console and prints the output.

Usage: start the engine, then
  python examples/demo_console_client.py "print(1+1)"
  python examples/demo_console_client.py --mode command "reload lua boot"
"""
import argparse
import sys
import time

from network.errors import ConsoleError
from network.state_machine import ConnectionManager
from parser import InputMode, InputParser


HOST = "127.0.0.1"
PORT = 10001


def on_event(event, data):
    if "error" in data:
        print(f"[{event}] {data['error']}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="Send one script or command to the engine console")
    parser.add_argument("line", help="script text or '<command> <resource_type> <resource_name>'")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--mode", choices=[m.value for m in InputMode], default=InputMode.SCRIPT.value)
    parser.add_argument("--wait", type=float, default=1.0, help="seconds to keep printing engine output")
    args = parser.parse_args()

    mgr = ConnectionManager(args.host, args.port, sink=lambda text: print(text, end="", flush=True))
    mgr.add_listener(on_event)
    try:
        msg = InputParser.parse(args.line, InputMode.parse(args.mode))
        mgr.connect()
        mgr.send_message(msg)
        time.sleep(args.wait)
    except ConsoleError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        mgr.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
