#!/usr/bin/env python3
#
# scan-connect - keep finding one BLE peripheral, connect, rescan on drop
#
# Scans until the target address shows up, stops scanning, connects, and
# goes back to scanning as soon as the link drops.  Every state change is
# printed, optionally streamed to a CSV log, and optionally written out in
# batch at exit.
#

"""Bluetooth LE scan/connect loop for a single target peripheral."""

import argparse
import asyncio
import csv
import json
import os
import platform
import re
import signal
import sys
import time
from typing import List, Optional

from scanconnect.adapter import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_SCAN_PAUSE,
    BleakAdapter,
)
from scanconnect.loop import (
    AdapterUnavailable,
    ScanConnectLoop,
    ScanState,
    TransitionRecord,
)

# Polling / timing constants
_POLL_INTERVAL = 0.5   # seconds between poll cycles
_RESTART_DELAY = 5.0   # seconds idle before scanning is restarted

_FIELDNAMES = ["timestamp", "from_state", "to_state", "reason"]

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

_BANNER = r"""
                                                            _
  ___  ___ __ _ _ __         ___ ___  _ __  _ __   ___  ___| |_
 / __|/ __/ _` | '_ \ _____ / __/ _ \| '_ \| '_ \ / _ \/ __| __|
 \__ \ (_| (_| | | | |_____| (_| (_) | | | | | | |  __/ (__| |_
 |___/\___\__,_|_| |_|      \___\___/|_| |_|_| |_|\___|\___|\__|

   Scan for one BLE peripheral, connect, rescan on disconnect
"""


class ScanConnectRunner:
    """Drive a ScanConnectLoop on the asyncio loop until stopped."""

    def __init__(self, target: str, timeout: float = float("inf"),
                 adapter: Optional[str] = None,
                 active: bool = False,
                 scan_duration: Optional[float] = None,
                 scan_pause: float = DEFAULT_SCAN_PAUSE,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 hold: Optional[float] = None,
                 output_format: Optional[str] = None,
                 output_file: Optional[str] = None,
                 log_file: Optional[str] = None,
                 verbose: bool = False,
                 quiet: bool = False):
        self.target = target.upper()
        self.timeout = timeout
        self.adapter_name = adapter
        self.active = active
        self.scan_duration = scan_duration
        self.scan_pause = scan_pause
        self.connect_timeout = connect_timeout
        self.hold = hold
        self.output_format = output_format
        self.output_file = output_file
        self.log_file = log_file
        self.verbose = verbose
        self.quiet = quiet
        self.running = True
        self.records: List[TransitionRecord] = []
        self._accumulate_records = (output_format is not None)
        self._log_writer = None
        self._log_fh = None
        self._connected_at: Optional[float] = None
        self._idle_since: Optional[float] = None
        self.adapter: Optional[BleakAdapter] = None
        self.loop: Optional[ScanConnectLoop] = None

    # ------------------------------------------------------------------
    # Sink / observers
    # ------------------------------------------------------------------

    def log_event(self, line: str):
        if not self.quiet:
            print(f"  {line}")

    def _warn(self, message: str):
        if not self.quiet:
            print(f"  [!] {message}")

    def _record_transition(self, record: TransitionRecord):
        if self._accumulate_records:
            self.records.append(record)
        if self._log_writer is not None:
            self._log_writer.writerow(record.as_dict())
            self._log_fh.flush()
        self._connected_at = None
        self._idle_since = None
        if record.to_state is ScanState.CONNECTED:
            self._connected_at = time.time()
        elif record.to_state is ScanState.IDLE:
            self._idle_since = time.time()

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    def build(self) -> ScanConnectLoop:
        self.adapter = BleakAdapter(
            adapter=self.adapter_name,
            active=self.active,
            scan_duration=self.scan_duration,
            scan_pause=self.scan_pause,
            connect_timeout=self.connect_timeout,
            on_error=self._warn,
        )
        self.loop = ScanConnectLoop(
            self.target, self.adapter, self,
            on_transition=self._record_transition,
            trace_advertisements=self.verbose,
        )
        return self.loop

    async def run(self) -> int:
        # Install signal handlers inside the async context for clean
        # shutdown without the signal-handler / KeyboardInterrupt race.
        aio_loop = asyncio.get_running_loop()
        if platform.system() != "Windows":
            aio_loop.add_signal_handler(signal.SIGINT, self.stop)
            aio_loop.add_signal_handler(signal.SIGTERM, self.stop)

        if self.loop is None:
            self.build()

        if not self.quiet:
            self._print_header()

        # Open real-time CSV log
        if self.log_file:
            self._log_fh = open(self.log_file, "w", newline="")
            self._log_writer = csv.DictWriter(self._log_fh,
                                              fieldnames=_FIELDNAMES)
            self._log_writer.writeheader()
            self._log_fh.flush()

        elapsed = 0.0
        try:
            await self.adapter.probe()
            try:
                self.loop.start()
            except AdapterUnavailable as e:
                print(f"Error: {e}")
                return 1
            elapsed = await self._poll()
        finally:
            self.loop.stop()
            await self.adapter.close()

            # Close log file
            if self._log_fh is not None:
                self._log_fh.close()
                self._log_fh = None
                self._log_writer = None

        self._print_summary(elapsed)
        self._write_output()
        return 0

    async def _poll(self) -> float:
        """Wait until stopped or timed out; return elapsed seconds."""
        start = time.time()
        try:
            while self.running and (time.time() - start) < self.timeout:
                self._poll_tick()
                if self._restart_due():
                    await self._restart()
                await asyncio.sleep(_POLL_INTERVAL)
        except asyncio.CancelledError:
            pass
        return time.time() - start

    def _poll_tick(self):
        """Release a held connection once its hold time is up."""
        if self.hold is None or self._connected_at is None:
            return
        if time.time() - self._connected_at >= self.hold:
            self._connected_at = None
            self.loop.release()

    def _restart_due(self) -> bool:
        if self.loop.state is not ScanState.IDLE or self._idle_since is None:
            return False
        return time.time() - self._idle_since >= _RESTART_DELAY

    async def _restart(self):
        """Probe the adapter again and resume scanning after a scan failure."""
        self._idle_since = time.time()
        if not await self.adapter.probe():
            return
        try:
            self.loop.start()
        except AdapterUnavailable as e:
            self._warn(str(e))

    def _print_header(self):
        print(_BANNER)
        print(f"Target: {self.target}")
        scan_mode = "active" if self.active else "passive"
        print(f"Scanning: {scan_mode}", end="")
        if self.scan_duration is not None:
            print(f"  |  duty cycle: {self.scan_duration}s on, "
                  f"{self.scan_pause}s off")
        else:
            print("  |  continuous")
        if self.adapter_name:
            print(f"Adapter: {self.adapter_name}")
        if self.hold is not None:
            print(f"Hold: release link after {self.hold}s")
        if self.log_file:
            print(f"Live log: {self.log_file}")
        if self.timeout == float("inf"):
            print("Running continuously  |  Press Ctrl+C to stop")
        else:
            print(f"Timeout: {self.timeout}s  |  Press Ctrl+C to stop")
        print(f"{'—'*60}")

    def _print_summary(self, elapsed: float):
        loop = self.loop
        print(f"\n{'—'*60}")
        print(f"Stopped — {elapsed:.1f}s elapsed")
        print(f"  Advertisements   : {loop.advertisements}")
        print(f"  Connect attempts : {loop.connect_attempts}")
        print(f"  Connections      : {loop.connections}")
        print(f"  Disconnections   : {loop.disconnections}")
        if loop.ignored_callbacks:
            print(f"  Late callbacks   : {loop.ignored_callbacks} ignored")

    def _write_rows(self, fh, rows: List[dict]):
        if self.output_format == "json":
            fh.write(json.dumps(rows, indent=2) + "\n")
        elif self.output_format == "jsonl":
            fh.writelines(json.dumps(row) + "\n" for row in rows)
        elif self.output_format == "csv":
            writer = csv.DictWriter(fh, fieldnames=_FIELDNAMES)
            writer.writeheader()
            writer.writerows(rows)

    def _write_output(self):
        """Write the transition history as json / jsonl / csv."""
        if self.output_format and self.records:
            rows = [r.as_dict() for r in self.records]
            filename = self.output_file or f"scan-connect-results.{self.output_format}"
            if filename == "-":
                self._write_rows(sys.stdout, rows)
                return
            with open(filename, "w", newline="") as f:
                self._write_rows(f, rows)
            print(f"  Results written to {filename}")
        if self.log_file:
            print(f"  Live log written to {self.log_file}")

    def stop(self):
        if not self.quiet and self.running:
            print("\nStopping...")
        self.running = False


def _positive(value: str) -> float:
    f = float(value)
    if f <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return f


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scan for one BLE peripheral, connect when it appears, "
                    "and resume scanning whenever the link drops"
    )
    parser.add_argument(
        "target", nargs="?", default=None,
        help="Target MAC address (default: $SCANCONNECT_TARGET)"
    )
    parser.add_argument(
        "-t", "--timeout", type=_positive, default=None,
        help="Stop after this many seconds (default: run until Ctrl+C)"
    )

    # Radio
    parser.add_argument(
        "--adapter", type=str, default=None, metavar="NAME",
        help="Bluetooth adapter to use (e.g. hci0 — Linux only)"
    )
    parser.add_argument(
        "--active", action="store_true",
        help="Use active scanning (default: passive)"
    )
    parser.add_argument(
        "--scan-duration", type=_positive, default=None, metavar="SECONDS",
        help="Duty-cycle the scanner: scan this long, then pause "
             "(default: scan continuously)"
    )
    parser.add_argument(
        "--scan-pause", type=_positive, default=None,
        metavar="SECONDS",
        help="Pause between duty-cycled scan windows "
             f"(default: {DEFAULT_SCAN_PAUSE}, needs --scan-duration)"
    )
    parser.add_argument(
        "--connect-timeout", type=_positive, default=DEFAULT_CONNECT_TIMEOUT,
        metavar="SECONDS",
        help=f"Connection timeout handed to bleak (default: {DEFAULT_CONNECT_TIMEOUT})"
    )
    parser.add_argument(
        "--hold", type=_positive, default=None, metavar="SECONDS",
        help="Disconnect after holding the link this long, then resume "
             "scanning (default: stay connected until the link drops)"
    )

    # Output / logging
    parser.add_argument(
        "--output", choices=["csv", "json", "jsonl"], default=None,
        help="Batch output format for state transitions, written at exit"
    )
    parser.add_argument(
        "-o", "--output-file", type=str, default=None, metavar="FILE",
        help="Output file path (default: scan-connect-results.<format>; "
             "use - for stdout)"
    )
    parser.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Stream state transitions to a CSV file in real time"
    )

    # Verbosity
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose mode — also print every advertisement seen"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Quiet mode — suppress per-event output, show summary only"
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    if args.target is None:
        args.target = os.environ.get("SCANCONNECT_TARGET")
    if not args.target:
        print(_BANNER)
        parser.print_help()
        sys.exit(0)

    if not _MAC_RE.match(args.target):
        parser.error(
            f"Invalid MAC address '{args.target}'. "
            "Expected format: XX:XX:XX:XX:XX:XX (6 colon-separated hex octets)")
    args.target = args.target.upper()

    if args.output_file and not args.output:
        parser.error("--output-file (-o) requires --output to specify "
                     "the format (csv, json, or jsonl)")

    if args.scan_pause is not None and args.scan_duration is None:
        parser.error("--scan-pause requires --scan-duration")
    if args.scan_pause is None:
        args.scan_pause = DEFAULT_SCAN_PAUSE

    if args.timeout is None:
        args.timeout = float("inf")
    return args


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    runner = ScanConnectRunner(
        args.target, args.timeout,
        adapter=args.adapter,
        active=args.active,
        scan_duration=args.scan_duration,
        scan_pause=args.scan_pause,
        connect_timeout=args.connect_timeout,
        hold=args.hold,
        output_format=args.output,
        output_file=args.output_file,
        log_file=args.log,
        verbose=args.verbose,
        quiet=args.quiet,
    )

    # On Windows, asyncio doesn't support loop.add_signal_handler, so
    # fall back to the older signal.signal approach.
    if platform.system() == "Windows":
        signal.signal(signal.SIGINT, lambda *_: runner.stop())

    status = 0
    try:
        status = asyncio.run(runner.run())
    except KeyboardInterrupt:
        pass
    sys.exit(status)


if __name__ == "__main__":
    main()
