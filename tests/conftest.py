"""
Pytest configuration and fixtures for all tests.
"""

import logging
import os
import socket
import sys

import pytest

# Make the top-level module importable without installing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


@pytest.fixture
def listening_port():
    """Port on 127.0.0.1 that accepts TCP connections."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(16)
    yield server.getsockname()[1]
    server.close()


@pytest.fixture
def closed_port():
    """Port on 127.0.0.1 that nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def restore_logging():
    """Put the root logger back the way it was after the CLI reconfigures it."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def unanswered_port():
    """
    Port on 127.0.0.1 whose listener has a full backlog, so new connection
    attempts get no answer until they time out.
    """
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(0)
    port = server.getsockname()[1]
    fillers = []
    try:
        for _ in range(32):
            try:
                fillers.append(socket.create_connection(('127.0.0.1', port), timeout=0.2))
            except socket.timeout:
                break
        else:
            pytest.skip('listener backlog never fills on this platform')
        yield port
    finally:
        for sock in fillers:
            sock.close()
        server.close()
