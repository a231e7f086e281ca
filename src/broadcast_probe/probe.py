#!/usr/bin/env python3
"""
UDP Broadcast Probe
Verifies that broadcast traffic crosses a network segment.
Sender broadcasts an incrementing counter every few seconds,
receiver prints each counter with the address it came from.
"""

import sys
import signal
import socket
import logging
import threading
from typing import List, Optional, Tuple
from prometheus_client import start_http_server, Counter, Gauge

from broadcast_probe.config_loader import ConfigLoader, ProbeConfig, Role
from broadcast_probe.payload import decode_counter, encode_counter

DEFAULT_BROADCAST_ADDRESS = '255.255.255.255'
WILDCARD_ADDRESS = '0.0.0.0'
RECV_BUFFER_SIZE = 65535

logger = logging.getLogger(__name__)

# Prometheus Metrics - only served when a metrics port is given
datagrams_sent = Counter('broadcast_probe_datagrams_sent', 'Counter datagrams sent', ['destination'])
datagrams_received = Counter('broadcast_probe_datagrams_received', 'Counter datagrams received', ['source'])
send_errors = Counter('broadcast_probe_send_errors', 'Failed sendto calls')
receive_errors = Counter('broadcast_probe_receive_errors', 'Failed recvfrom calls')
last_value_gauge = Gauge('broadcast_probe_last_value', 'Last counter value sent or received', ['role', 'peer'])


class ProbeError(Exception):
    """Fatal probe failure: the step that failed and the OS error behind it"""

    def __init__(self, step: str, error: Optional[Exception] = None):
        self.step = step
        self.error = error
        super().__init__(f"{step}: {error}" if error is not None else step)


class ProbeSetupError(ProbeError):
    """Socket could not be created, configured or bound"""


class ProbeIOError(ProbeError):
    """Send or receive failed"""


def start_network_stack() -> None:
    """Prepare the OS socket layer before the first socket is created.

    The interpreter initializes Winsock when the socket module loads, so no
    platform CPython supports needs further work here.
    """
    logger.debug(f"Network stack ready on {sys.platform}")


class BroadcastProbe:
    """One UDP socket session running as broadcast sender or receiver"""

    def __init__(self, config: ProbeConfig, stop_event: Optional[threading.Event] = None):
        self.config = config
        self.stop_event = stop_event or threading.Event()
        self.sock: Optional[socket.socket] = None
        self.counter = 0

    @property
    def destination(self) -> Tuple[str, int]:
        """Address the sender broadcasts to"""
        return (self.config.address or DEFAULT_BROADCAST_ADDRESS, self.config.port)

    @property
    def local_port(self) -> int:
        return self.sock.getsockname()[1]

    @property
    def ttl(self) -> int:
        return self.sock.getsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL)

    def open(self):
        """Create the socket, enable broadcast, apply the TTL and bind"""
        start_network_stack()

        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise ProbeSetupError("Setting up socket", e) from e

        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        except OSError as e:
            self.close()
            raise ProbeSetupError("Setting broadcast", e) from e

        try:
            self.sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.config.ttl)
        except (OSError, OverflowError) as e:
            self.close()
            raise ProbeSetupError("Setting TTL", e) from e

        # Lets a sender and a receiver share the port on one host
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self.close()
            raise ProbeSetupError("Setting address reuse", e) from e

        try:
            self.sock.bind((WILDCARD_ADDRESS, self.config.port))
        except (OSError, OverflowError) as e:
            self.close()
            raise ProbeSetupError("Binding socket", e) from e

        logger.debug(f"Socket bound to {WILDCARD_ADDRESS}:{self.local_port} (ttl={self.config.ttl})")

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def stop(self):
        """Ask the running loop to finish"""
        self.stop_event.set()

    def send_counter(self):
        """Send the current counter value as one datagram, then advance it"""
        host, port = self.destination
        payload = encode_counter(self.counter)

        logger.info(f"Sending {self.counter}")
        try:
            self.sock.sendto(payload, (host, port))
        except OSError as e:
            send_errors.inc()
            raise ProbeIOError("Sending broadcast", e) from e

        datagrams_sent.labels(destination=host).inc()
        last_value_gauge.labels(role=Role.SENDER.value, peer=host).set(self.counter)
        self.counter += 1

    def broadcast(self) -> int:
        """Send loop. Returns the number of datagrams sent."""
        host, port = self.destination
        logger.info(f"Broadcast to {host}:{port}")

        sent = 0
        while not self.stop_event.is_set():
            self.send_counter()
            sent += 1

            if self.config.count and sent >= self.config.count:
                break

            # Wakes early when stop() is called
            self.stop_event.wait(self.config.interval)

        return sent

    def receive_one(self) -> Tuple[int, str]:
        """Block until one datagram arrives and return (value, source ip)"""
        try:
            data, addr = self.sock.recvfrom(RECV_BUFFER_SIZE)
        except OSError as e:
            receive_errors.inc()
            if e.errno is not None:
                raise ProbeIOError(f"recvfrom failed with error {e.errno}", e) from e
            raise ProbeIOError("recvfrom failed", e) from e

        value = decode_counter(data)
        source = addr[0]
        logger.debug(f"{len(data)} bytes from {source}:{addr[1]}")
        logger.info(f"Received {value} from '{source}'")

        datagrams_received.labels(source=source).inc()
        last_value_gauge.labels(role=Role.RECEIVER.value, peer=source).set(value)
        return value, source

    def receive(self) -> List[Tuple[int, str]]:
        """Receive loop. Returns every (value, source ip) received."""
        logger.info("Waiting for data")

        received = []
        while not self.stop_event.is_set():
            received.append(self.receive_one())

            if self.config.count and len(received) >= self.config.count:
                break

        return received

    def run(self):
        """Dispatch to the loop for the configured role"""
        if self.config.role is Role.RECEIVER:
            return self.receive()
        return self.broadcast()


def configure_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - [%(name)s] %(message)s',
        stream=sys.stdout
    )


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: parse flags, open the socket, run until stopped"""
    configure_logging()

    config = ConfigLoader.parse(sys.argv[1:] if argv is None else argv)
    if config.show_usage:
        print(ConfigLoader.usage())
        return 0

    if not ConfigLoader.validate(config):
        logger.error("Configuration validation failed")
        return 1

    logger.info(f"Role: {config.role.value}, port: {config.port}, ttl: {config.ttl}")

    previous_handler = signal.signal(signal.SIGTERM, _interrupt)
    probe = BroadcastProbe(config)
    try:
        if config.metrics_port:
            try:
                start_http_server(config.metrics_port)
            except (OSError, OverflowError) as e:
                raise ProbeSetupError("Starting metrics server", e) from e
            logger.info(f"Metrics server listening on :{config.metrics_port}/metrics")

        with probe:
            probe.run()

    except KeyboardInterrupt:
        logger.info("Shutting down broadcast probe")
    except ProbeError as e:
        logger.error(str(e))
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    return 0


if __name__ == "__main__":
    sys.exit(main())
