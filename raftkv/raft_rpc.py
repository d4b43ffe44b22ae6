"""gRPC transport for Raft: RequestVote and AppendEntries, server and client sides.

The service works on a node that offers these attributes: ``lock``,
``current_term``, ``voted_for``, ``role``, ``log``, ``commit_index``,
``last_applied``, ``last_included_index``, ``cur_node_id`` and
``cluster_configs`` (items with an ``addr``), and these methods:
``_persist()``, ``_reset_vote_timer()``, ``_virtual_log_idx(i)`` and
``_real_log_idx(i)``. The caller of each method below must not hold the
node's lock.
"""

from __future__ import annotations

import functools
import logging
import threading
import weakref
from concurrent import futures
from typing import Any, Optional

import grpc

from . import raft as raft_module
from .messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    RequestVoteArgs,
    RequestVoteReply,
    from_json,
    to_json,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "raft.Raft"
_REQUEST_VOTE = f"/{SERVICE_NAME}/RequestVote"
_APPEND_ENTRIES = f"/{SERVICE_NAME}/AppendEntries"


class _Stub:
    """Client-side callables for one peer address."""

    def __init__(self, address: str) -> None:
        self.channel = grpc.insecure_channel(address)
        self.request_vote = self.channel.unary_unary(
            _REQUEST_VOTE,
            request_serializer=to_json,
            response_deserializer=functools.partial(from_json, RequestVoteReply),
        )
        self.append_entries = self.channel.unary_unary(
            _APPEND_ENTRIES,
            request_serializer=to_json,
            response_deserializer=functools.partial(from_json, AppendEntriesReply),
        )


class RaftService:
    """Serves Raft RPCs for one node and sends its RPCs to peers."""

    _instances: dict[int, "weakref.ref[RaftService]"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, node: Any, rpc_timeout: Optional[float] = None) -> None:
        self.node = node
        self.rpc_timeout = rpc_timeout
        self._server: Optional[grpc.Server] = None
        self._stubs: dict[str, _Stub] = {}
        self._stubs_lock = threading.Lock()

    @classmethod
    def get_or_create(cls, node: Any) -> "RaftService":
        """Return the live service of `node`, creating and starting one if needed."""
        key = id(node)
        with cls._instances_lock:
            ref = cls._instances.get(key)
            existing = ref() if ref is not None else None
            if existing is not None and existing.node is node:
                return existing

            service = cls(node)

            def forget(dead: "weakref.ref[RaftService]", key: int = key) -> None:
                with cls._instances_lock:
                    if cls._instances.get(key) is dead:
                        del cls._instances[key]

            cls._instances[key] = weakref.ref(service, forget)
            service.start()
            return service

    def start(self) -> None:
        """Listen on the node's own address from its cluster configuration."""
        if self._server is not None:
            return
        address = self.node.cluster_configs[self.node.cur_node_id].addr
        server = grpc.server(futures.ThreadPoolExecutor(max_workers=16))
        server.add_generic_rpc_handlers((self._generic_handler(),))
        if server.add_insecure_port(address) == 0:
            raise RuntimeError(f"cannot listen on {address}")
        server.start()
        self._server = server
        logger.info("server %s listening on %s", self.node.cur_node_id, address)

    def stop(self) -> None:
        """Shut the server down and close every client channel."""
        if self._server is not None:
            self._server.stop(None)
            self._server = None
        with self._stubs_lock:
            stubs = list(self._stubs.values())
            self._stubs.clear()
        for stub in stubs:
            stub.channel.close()

    def _generic_handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            SERVICE_NAME,
            {
                "RequestVote": grpc.unary_unary_rpc_method_handler(
                    lambda request, context: self.request_vote(request),
                    request_deserializer=functools.partial(from_json, RequestVoteArgs),
                    response_serializer=to_json,
                ),
                "AppendEntries": grpc.unary_unary_rpc_method_handler(
                    lambda request, context: self.append_entries(request),
                    request_deserializer=functools.partial(from_json, AppendEntriesArgs),
                    response_serializer=to_json,
                ),
            },
        )

    def _step_down(self, term: int) -> None:
        node = self.node
        node.current_term = term
        node.voted_for = -1
        node.role = raft_module.RaftState.FOLLOWER
        node._persist()

    def request_vote(self, request: RequestVoteArgs) -> RequestVoteReply:
        """Decide whether to grant a vote to the candidate in `request`."""
        node = self.node
        with node.lock:
            if request.term < node.current_term:
                logger.info(
                    "server %s refuses vote to server %s: stale term %s",
                    node.cur_node_id, request.candidate_id, request.term,
                )
                return RequestVoteReply(term=node.current_term, vote_granted=False)

            if request.term > node.current_term:
                self._step_down(request.term)

            if node.voted_for in (-1, request.candidate_id):
                last_term = node.log.last().term
                last_index = node._virtual_log_idx(len(node.log) - 1)
                if request.last_log_term > last_term or (
                    request.last_log_term == last_term and request.last_log_index >= last_index
                ):
                    node.current_term = request.term
                    node.voted_for = request.candidate_id
                    node.role = raft_module.RaftState.FOLLOWER
                    node._reset_vote_timer()
                    node._persist()
                    logger.info(
                        "server %s grants vote to server %s in term %s",
                        node.cur_node_id, request.candidate_id, request.term,
                    )
                    return RequestVoteReply(term=node.current_term, vote_granted=True)
                if request.last_log_term < last_term:
                    logger.info(
                        "server %s refuses vote to server %s: log term %s older than %s",
                        node.cur_node_id, request.candidate_id, request.last_log_term, last_term,
                    )
                else:
                    logger.info(
                        "server %s refuses vote to server %s: log index %s behind %s",
                        node.cur_node_id, request.candidate_id, request.last_log_index, last_index,
                    )
            else:
                logger.info(
                    "server %s refuses vote to server %s: already voted",
                    node.cur_node_id, request.candidate_id,
                )
            return RequestVoteReply(term=node.current_term, vote_granted=False)

    def append_entries(self, request: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle a heartbeat or a batch of entries from a leader."""
        node = self.node
        with node.lock:
            if request.term < node.current_term:
                logger.info(
                    "server %s rejects AppendEntries from server %s: term %s < %s",
                    node.cur_node_id, request.leader_id, request.term, node.current_term,
                )
                return AppendEntriesReply(term=node.current_term, success=False)

            node._reset_vote_timer()

            if request.term > node.current_term:
                self._step_down(request.term)

            logger.info(
                "server %s got AppendEntries from leader %s: last_included_index=%s, "
                "prev_log_index=%s, entries=%s",
                node.cur_node_id, request.leader_id, node.last_included_index,
                request.prev_log_index, len(request.entries),
            )

            if request.prev_log_index < node.last_included_index:
                return AppendEntriesReply(term=node.current_term, success=True)

            log_len = node._virtual_log_idx(len(node.log))
            if request.prev_log_index >= log_len:
                logger.info(
                    "server %s has no entry at prev_log_index %s, log length %s",
                    node.cur_node_id, request.prev_log_index, log_len,
                )
                return AppendEntriesReply(
                    term=node.current_term, success=False, x_term=-1, x_len=log_len
                )

            prev_term = node.log[node._real_log_idx(request.prev_log_index)].term
            if prev_term != request.prev_log_term:
                i = request.prev_log_index
                while i > node.commit_index and node.log[node._real_log_idx(i)].term == prev_term:
                    i -= 1
                logger.info(
                    "server %s term mismatch at prev_log_index %s: expected %s, found %s",
                    node.cur_node_id, request.prev_log_index, request.prev_log_term, prev_term,
                )
                return AppendEntriesReply(
                    term=node.current_term,
                    success=False,
                    x_term=prev_term,
                    x_index=i + 1,
                    x_len=log_len,
                )

            base = node._real_log_idx(request.prev_log_index) + 1
            for offset, entry in enumerate(request.entries):
                position = base + offset
                if position < len(node.log) and node.log[position].term != entry.term:
                    node.log.truncate_from(position)
                    for new_entry in request.entries[offset:]:
                        node.log.append(new_entry)
                    break
                if position == len(node.log):
                    for new_entry in request.entries[offset:]:
                        node.log.append(new_entry)
                    break

            if request.entries:
                logger.info(
                    "server %s appended entries: last_applied=%s, len(log)=%s",
                    node.cur_node_id, node.last_applied, len(node.log),
                )

            node._persist()

            if request.leader_commit > node.commit_index:
                last_index = node._virtual_log_idx(len(node.log) - 1)
                node.commit_index = min(request.leader_commit, last_index)
                logger.info(
                    "server %s advanced commit_index to %s, len(log)=%s",
                    node.cur_node_id, node.commit_index, len(node.log),
                )

            return AppendEntriesReply(term=node.current_term, success=True)

    def get_vote_answer(self, address: str, request: RequestVoteArgs) -> bool:
        """Ask the peer at `address` for a vote; True only if it was granted and still counts."""
        node = self.node
        logger.info("server %s sends vote request to %s", node.cur_node_id, address)
        try:
            reply = self._stub(address).request_vote(request, timeout=self.rpc_timeout)
        except grpc.RpcError as exc:
            logger.info(
                "server %s vote request to %s failed: %s", node.cur_node_id, address, exc
            )
            return False

        with node.lock:
            if (
                node.role != raft_module.RaftState.CANDIDATE
                or request.term != node.current_term
            ):
                logger.info(
                    "server %s ignores vote reply from %s: state changed meanwhile",
                    node.cur_node_id, address,
                )
                return False

            if reply.term > node.current_term:
                self._step_down(reply.term)
                logger.info(
                    "server %s saw newer term %s from %s and became follower",
                    node.cur_node_id, node.current_term, address,
                )

            logger.info(
                "server %s got vote reply from %s: granted=%s",
                node.cur_node_id, address, reply.vote_granted,
            )
            return reply.vote_granted

    def send_append_entries(
        self, address: str, request: AppendEntriesArgs
    ) -> Optional[AppendEntriesReply]:
        """Send AppendEntries to `address`; return the reply, or None if the call failed."""
        logger.info(
            "server %s sends AppendEntries to %s", self.node.cur_node_id, address
        )
        try:
            return self._stub(address).append_entries(request, timeout=self.rpc_timeout)
        except grpc.RpcError:
            return None

    def _stub(self, address: str) -> _Stub:
        with self._stubs_lock:
            stub = self._stubs.get(address)
            if stub is None:
                stub = _Stub(address)
                self._stubs[address] = stub
            return stub