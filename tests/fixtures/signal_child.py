#!/usr/bin/env python3
"""Child program for signal and pipeline tests.

Usage:
    python signal_child.py sleep SECONDS
    python signal_child.py watch [--delay SECONDS]
    python signal_child.py relay [--delay SECONDS]
    python signal_child.py emit TEXT [--stderr TEXT] [--exit-code CODE]

Modes:
    sleep: sleep, with default signal dispositions
    watch: print the name of every SIGTERM received, sleep, then print "bye!"
    relay: print "from a: <line>" for each stdin line; SIGTERMs received while
        reading are reported as "b: SIGTERM" once input ends, later ones
        immediately; then sleep and print "b: bye!"
    emit: write TEXT to stdout (and optionally stderr), exit with CODE
"""

from __future__ import annotations

import argparse
import signal
import sys
import time

_reading = False
_pending: list[str] = []


def emit(line: str) -> None:
    """Write one line to stdout and flush it."""
    print(line, flush=True)


def watch(delay: float) -> int:
    signal.signal(signal.SIGTERM, lambda signum, frame: emit(signal.Signals(signum).name))
    time.sleep(delay)
    emit("bye!")
    return 0


def relay(delay: float) -> int:
    global _reading

    def handler(signum: int, frame) -> None:
        name = signal.Signals(signum).name
        if _reading:
            _pending.append(name)
        else:
            emit(f"b: {name}")

    signal.signal(signal.SIGTERM, handler)

    _reading = True
    for line in sys.stdin:
        emit(f"from a: {line.rstrip()}")
    _reading = False

    for name in _pending:
        emit(f"b: {name}")
    _pending.clear()

    time.sleep(delay)
    emit("b: bye!")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Child program for tests")
    parser.add_argument("mode", choices=["sleep", "watch", "relay", "emit"])
    parser.add_argument("value", nargs="?", default=None)
    parser.add_argument("--delay", type=float, default=2.0)
    parser.add_argument("--stderr", type=str, default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args()

    if args.mode == "sleep":
        time.sleep(float(args.value or 100))
        return 0
    if args.mode == "watch":
        return watch(args.delay)
    if args.mode == "relay":
        return relay(args.delay)

    if args.value is not None:
        emit(args.value)
    if args.stderr is not None:
        print(args.stderr, file=sys.stderr, flush=True)
    return args.exit_code


if __name__ == "__main__":
    sys.exit(main())
