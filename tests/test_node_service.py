import json
import socket

import grpc
import pytest

from raftkv.node_service import NodeService, ping_client, start_server


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


@pytest.fixture
def server_address():
    address = f"localhost:{_free_port()}"
    server = start_server(address)
    try:
        yield address
    finally:
        server.stop(None)


def test_ping_over_grpc(server_address):
    assert ping_client(server_address) == "pong"


def test_ping_unreachable_is_error():
    assert ping_client(f"localhost:{_free_port()}") == "error"


def test_service_ping():
    assert NodeService().ping() == "pong"


def test_service_send_message_prints(capsys):
    assert NodeService().send_message("hello") is True
    assert "Received message: hello" in capsys.readouterr().out


def test_send_message_over_grpc(server_address, capsys):
    with grpc.insecure_channel(server_address) as channel:
        call = channel.unary_unary(
            "/node.NodeService/SendMessage",
            request_serializer=lambda obj: json.dumps(obj).encode("utf-8"),
            response_deserializer=json.loads,
        )
        reply = call({"content": "over the wire"}, timeout=5)
    assert reply == {"success": True}
    assert "Received message: over the wire" in capsys.readouterr().out