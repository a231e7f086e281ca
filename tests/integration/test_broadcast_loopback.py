#!/usr/bin/env python3
"""
Integration test for the broadcast probe over loopback
Runs sender and receiver on the same host with real sockets and the CLI
"""

import os
import socket
import subprocess
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from broadcast_probe.config_loader import ProbeConfig, Role
from broadcast_probe.payload import decode_counter, encode_counter
from broadcast_probe.probe import BroadcastProbe

pytestmark = [
    pytest.mark.integration,
    # Port sharing and loopback broadcast routing are Linux-specific
    pytest.mark.skipif(sys.platform != "linux", reason="relies on Linux SO_REUSEADDR and lo broadcast"),
]

LOOPBACK = '127.0.0.1'
# Loopback broadcast reaches every socket bound to the port, sender included
LOOPBACK_BROADCAST = '127.255.255.255'


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind((LOOPBACK, 0))
        return s.getsockname()[1]


def wait_for_line(proc, text):
    line = proc.stdout.readline()
    while line and text not in line:
        line = proc.stdout.readline()


def run_cli(*args):
    env = dict(os.environ)
    env['PYTHONPATH'] = os.pathsep.join(filter(None, [str(SRC), env.get('PYTHONPATH')]))
    return subprocess.Popen(
        [sys.executable, '-m', 'broadcast_probe.probe', *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env=env
    )


def test_receiver_listens_on_configured_port():
    port = free_port()
    with BroadcastProbe(ProbeConfig(port=port, role=Role.RECEIVER)) as probe:
        assert probe.local_port == port


def test_sender_to_receiver_same_host():
    """Receiver started first reports 0 then 1 from the sender's address"""
    port = free_port()
    receiver = BroadcastProbe(ProbeConfig(port=port, role=Role.RECEIVER, count=2))
    sender = BroadcastProbe(ProbeConfig(port=port, address=LOOPBACK_BROADCAST, interval=0.2, count=2))

    # Both sockets share the port; only a broadcast reaches every one of them
    receiver.open()
    receiver.sock.settimeout(10)
    sender.open()

    received = []
    worker = threading.Thread(target=lambda: received.extend(receiver.receive()))
    worker.start()
    try:
        assert sender.broadcast() == 2
        worker.join(timeout=10)
    finally:
        sender.close()
        receiver.close()

    assert received == [(0, LOOPBACK), (1, LOOPBACK)]


def test_cli_receiver_then_sender_same_host():
    port = free_port()
    receiver = run_cli('-r', f'-p{port}', '-c2')
    sender = None
    try:
        wait_for_line(receiver, "Waiting for data")

        sender = run_cli(f'-p{port}', f'-a{LOOPBACK_BROADCAST}', '-i0.3', '-c2')
        sender_output, _ = sender.communicate(timeout=10)
        receiver_output, _ = receiver.communicate(timeout=10)
    finally:
        for proc in (receiver, sender):
            if proc is not None and proc.poll() is None:
                proc.kill()

    assert sender.returncode == 0
    assert receiver.returncode == 0
    assert "Sending 1" in sender_output
    assert f"Received 0 from '{LOOPBACK}'" in receiver_output
    assert f"Received 1 from '{LOOPBACK}'" in receiver_output


def test_cli_receiver_reports_values():
    port = free_port()
    proc = run_cli('-r', f'-p{port}', '-c2')
    try:
        wait_for_line(proc, "Waiting for data")

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.sendto(encode_counter(0), (LOOPBACK, port))
            s.sendto(encode_counter(1), (LOOPBACK, port))

        output, _ = proc.communicate(timeout=10)
    finally:
        if proc.poll() is None:
            proc.kill()

    assert proc.returncode == 0
    assert f"Received 0 from '{LOOPBACK}'" in output
    assert f"Received 1 from '{LOOPBACK}'" in output


def test_cli_sender_emits_sequence():
    port = free_port()

    # A socket bound to the exact address outranks the sender's wildcard bind
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind((LOOPBACK, port))
    listener.settimeout(10)
    try:
        proc = run_cli(f'-p{port}', f'-a{LOOPBACK}', '-i0.1', '-c3')
        values = [decode_counter(listener.recvfrom(1024)[0]) for _ in range(3)]
        output, _ = proc.communicate(timeout=10)
    finally:
        listener.close()

    assert values == [0, 1, 2]
    assert proc.returncode == 0
    assert f"Broadcast to {LOOPBACK}:{port}" in output
    assert "Sending 2" in output


def test_cli_setup_failure_exit_code():
    proc = run_cli('-p0', '-t1000')
    output, _ = proc.communicate(timeout=10)

    assert proc.returncode == 1
    assert "Setting TTL" in output


def test_cli_unknown_flag_does_not_crash():
    proc = run_cli('-z', '-?')
    output, _ = proc.communicate(timeout=10)

    assert proc.returncode == 0
    assert "Unknown command line argument '-z'" in output
