#!/usr/bin/env python3
"""
Broadcast Probe Command-Line Configuration
Parses the probe's single-letter flags into an immutable ProbeConfig
"""

import re
import argparse
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PORT = 40061
DEFAULT_TTL = 1
DEFAULT_INTERVAL = 5.0

_LEADING_INT = re.compile(r'\s*([+-]?\d+)')
_LEADING_FLOAT = re.compile(r'\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+))')


class Role(Enum):
    """Operating mode selected at startup"""
    SENDER = "sender"
    RECEIVER = "receiver"


@dataclass(frozen=True)
class ProbeConfig:
    """Settings for one probe run, fixed for the lifetime of the process"""
    port: int = DEFAULT_PORT
    ttl: int = DEFAULT_TTL
    role: Role = Role.SENDER
    address: Optional[str] = None
    interval: float = DEFAULT_INTERVAL
    count: int = 0
    metrics_port: int = 0
    show_usage: bool = False


def parse_int(text: Optional[str]) -> int:
    """Leading decimal digits of text, 0 when there are none"""
    match = _LEADING_INT.match(text or '')
    return int(match.group(1)) if match else 0


def parse_float(text: Optional[str]) -> float:
    match = _LEADING_FLOAT.match(text or '')
    return float(match.group(1)) if match else 0.0


class ConfigLoader:
    """Builds a ProbeConfig from process arguments"""

    @staticmethod
    def _build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='broadcast-probe',
            add_help=False,
            allow_abbrev=False
        )
        # Values are kept as raw strings so malformed numbers parse to 0
        parser.add_argument('-r', dest='receive', action='store_true')
        parser.add_argument('-a', dest='address', nargs='?', const='')
        parser.add_argument('-p', dest='port', nargs='?', const='')
        parser.add_argument('-t', dest='ttl', nargs='?', const='')
        parser.add_argument('-i', dest='interval', nargs='?', const='')
        parser.add_argument('-c', dest='count', nargs='?', const='')
        parser.add_argument('-m', dest='metrics_port', nargs='?', const='')
        parser.add_argument('-?', dest='show_usage', action='store_true')
        return parser

    @staticmethod
    def parse(argv: List[str]) -> ProbeConfig:
        """Parse command-line arguments; unknown arguments are logged and skipped"""
        # -r takes no value; anything glued to it is ignored
        argv = ['-r' if arg.startswith('-r') else arg for arg in argv]

        args, unknown = ConfigLoader._build_parser().parse_known_args(argv)
        for arg in unknown:
            logger.warning(f"Unknown command line argument '{arg}'")

        return ProbeConfig(
            port=DEFAULT_PORT if args.port is None else parse_int(args.port),
            ttl=DEFAULT_TTL if args.ttl is None else parse_int(args.ttl),
            role=Role.RECEIVER if args.receive else Role.SENDER,
            address=args.address or None,
            interval=DEFAULT_INTERVAL if args.interval is None else parse_float(args.interval),
            count=0 if args.count is None else parse_int(args.count),
            metrics_port=0 if args.metrics_port is None else parse_int(args.metrics_port),
            show_usage=args.show_usage
        )

    @staticmethod
    def usage() -> str:
        return "\n".join([
            "broadcast-probe [-r] [-aAAAA] [-pPPPP] [-tTTTT] [-iSSSS] [-cNNNN] [-mPPPP] [-?]",
            "\t  -r\tReceive broadcasts. Default is to send without this flag.",
            "\tAAAA\tIP address to send broadcast to.",
            "\t\tBy default the global broadcast address 255.255.255.255 is used.",
            "\t\tIf you want to test a specific network you could use this to specify.",
            "\t\tEG 192.168.50.255",
            "\t\tTo test on one host, run the receiver first and send to 127.255.255.255.",
            f"\tPPPP\tThe port to broadcast on. Default is {DEFAULT_PORT}",
            f"\tTTTT\tThe multi-cast TTL to use. Default is {DEFAULT_TTL}",
            f"\tSSSS\tSeconds between broadcasts. Default is {DEFAULT_INTERVAL:g}",
            "\tNNNN\tStop after this many datagrams. Default is 0 (run forever)",
            "\t  -m\tServe Prometheus metrics on port PPPP. Default is off",
        ])

    @staticmethod
    def validate(config: ProbeConfig) -> bool:
        """Check configuration values; suspicious values only warn"""

        if not 0 <= config.port <= 65535:
            logger.error(f"Port {config.port} is outside 0-65535")
            return False

        if config.port == 0:
            logger.warning("Port 0 binds an ephemeral port")

        if not 0 <= config.ttl <= 255:
            logger.warning(f"TTL {config.ttl} is outside 0-255")

        if config.role is Role.SENDER and config.interval <= 0:
            logger.warning(f"Interval {config.interval}s sends without pausing")

        if config.metrics_port and not 0 < config.metrics_port <= 65535:
            logger.error(f"Metrics port {config.metrics_port} is outside 1-65535")
            return False

        return True
