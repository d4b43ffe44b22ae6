"""A minimal node service over gRPC: ping and one-way text messages."""

from __future__ import annotations

import json
from concurrent import futures
from typing import Any

import grpc

SERVICE_NAME = "node.NodeService"
_PING = f"/{SERVICE_NAME}/Ping"
_SEND_MESSAGE = f"/{SERVICE_NAME}/SendMessage"
_PING_TIMEOUT = 5.0


def _encode(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _decode(data: bytes) -> Any:
    return json.loads(data)


class NodeService:
    """Answers pings and acknowledges messages."""

    def ping(self) -> str:
        return "pong"

    def send_message(self, content: str) -> bool:
        print(f"Received message: {content}", flush=True)
        return True

    def generic_handler(self) -> grpc.GenericRpcHandler:
        """The gRPC handler that routes calls to this service."""

        def handle_ping(request: Any, context: grpc.ServicerContext) -> dict:
            return {"msg": self.ping()}

        def handle_send_message(request: Any, context: grpc.ServicerContext) -> dict:
            content = request.get("content", "") if isinstance(request, dict) else ""
            return {"success": self.send_message(content)}

        return grpc.method_handlers_generic_handler(
            SERVICE_NAME,
            {
                "Ping": grpc.unary_unary_rpc_method_handler(
                    handle_ping, request_deserializer=_decode, response_serializer=_encode
                ),
                "SendMessage": grpc.unary_unary_rpc_method_handler(
                    handle_send_message, request_deserializer=_decode, response_serializer=_encode
                ),
            },
        )


def start_server(address: str) -> grpc.Server:
    """Start serving a NodeService on `address` and return the running server."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=8))
    server.add_generic_rpc_handlers((NodeService().generic_handler(),))
    if server.add_insecure_port(address) == 0:
        raise RuntimeError(f"cannot listen on {address}")
    server.start()
    print(f"Server listening on {address}", flush=True)
    return server


def run_server(address: str) -> None:
    """Serve a NodeService on `address` until the server terminates."""
    server = start_server(address)
    server.wait_for_termination()


def ping_client(address: str) -> str:
    """Ping the node at `address`; return "pong" on success and "error" otherwise."""
    with grpc.insecure_channel(address) as channel:
        ping = channel.unary_unary(_PING, request_serializer=_encode, response_deserializer=_decode)
        try:
            ping({}, timeout=_PING_TIMEOUT)
        except grpc.RpcError:
            return "error"
    return "pong"