"""A Raft consensus node: leader election and log replication over gRPC."""

from __future__ import annotations

import enum
import logging
import os
import struct
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from . import raft_rpc
from .log_vec import LogVec
from .messages import AppendEntriesArgs, Entry, RequestVoteArgs
from .timer import (
    HEARTBEAT_TIMEOUT_MS,
    MAX_ELECT_TIMEOUT_MS,
    MIN_ELECT_TIMEOUT_MS,
    Timer,
    random_elect_timeout,
)

logger = logging.getLogger(__name__)

_START_DELAY = 1.0
_RPC_TIMEOUT = 1.0
_STATE = struct.Struct("<qq")
_STATE_FILE = "raft_state"


class RaftState(enum.Enum):
    FOLLOWER = "FOLLOWER"
    CANDIDATE = "CANDIDATE"
    LEADER = "LEADER"


def raft_state_to_string(state: Any) -> str:
    """Name of a role, or "UNKNOWN" for anything that is not a RaftState."""
    if isinstance(state, RaftState):
        return state.value
    return "UNKNOWN"


@dataclass(frozen=True)
class NodeConfig:
    """Where one cluster member listens."""

    addr: str = ""


class _Ballot:
    """Vote tally shared by the vote collectors of one election."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.count = 1


class RaftNode:
    """One member of a Raft cluster."""

    def __init__(
        self, cluster_configs: Iterable[NodeConfig], log_dir: str, cur_node_id: int
    ) -> None:
        self.cluster_configs = list(cluster_configs)
        if not 0 <= cur_node_id < len(self.cluster_configs):
            raise ValueError(
                f"node id {cur_node_id} is outside a cluster of {len(self.cluster_configs)}"
            )
        self.cur_node_id = cur_node_id
        self.lock = threading.RLock()
        self.log = LogVec(log_dir)
        if not len(self.log):
            self.log.append(Entry())
        self.state_path = os.path.join(log_dir, _STATE_FILE)
        self.service: Optional[raft_rpc.RaftService] = None

        self.current_term = 0
        self.voted_for = -1
        self.role = RaftState.FOLLOWER
        self.commit_index = 0
        self.last_applied = 0
        self.last_included_index = 0
        self.last_included_term = 0
        self.next_index = [0] * len(self.cluster_configs)
        self.match_index = [0] * len(self.cluster_configs)

        self.vote_timer = Timer()
        self.heart_timer = Timer()
        self._dead = threading.Event()

    @classmethod
    def create(
        cls, cluster_configs: Iterable[NodeConfig], log_dir: str, cur_node_id: int
    ) -> "RaftNode":
        """Build a node, start serving RPCs and start its election ticker."""
        node = cls(cluster_configs, log_dir, cur_node_id)
        service = raft_rpc.RaftService.get_or_create(node)
        if service.rpc_timeout is None:
            service.rpc_timeout = _RPC_TIMEOUT
        node.service = service
        threading.Thread(target=node._start_ticker, daemon=True).start()
        return node

    def get_state(self) -> tuple[int, bool]:
        """Current term, and whether anything has been applied yet."""
        with self.lock:
            return self.current_term, self.last_applied != 0

    def get_role(self) -> RaftState:
        with self.lock:
            return self.role

    def kill(self) -> None:
        """Stop the node: its timers, background loops and RPC server."""
        self._dead.set()
        self.vote_timer.stop()
        self.heart_timer.stop()
        if self.service is not None:
            self.service.stop()

    def killed(self) -> bool:
        return self._dead.is_set()

    def _virtual_log_idx(self, physical_idx: int) -> int:
        return physical_idx + self.last_included_index

    def _real_log_idx(self, virtual_idx: int) -> int:
        return virtual_idx - self.last_included_index

    def _reset_vote_timer(self) -> None:
        timeout_ms = random_elect_timeout(MIN_ELECT_TIMEOUT_MS, MAX_ELECT_TIMEOUT_MS)
        self.vote_timer.reset(timeout_ms / 1000)

    def _reset_heart_timer(self, timeout_ms: int) -> None:
        self.heart_timer.reset(timeout_ms / 1000)

    def _persist(self) -> None:
        temporary = self.state_path + ".tmp"
        with open(temporary, "wb") as handle:
            handle.write(_STATE.pack(self.current_term, self.voted_for))
        os.replace(temporary, self.state_path)

    def _spawn(self, target: Any, *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    def _start_ticker(self) -> None:
        if self._dead.wait(_START_DELAY):
            return
        logger.info("server %s starts its election timer", self.cur_node_id)
        with self.lock:
            self._reset_vote_timer()
        self._ticker()

    def _ticker(self) -> None:
        while not self.killed():
            if not self.vote_timer.wait():
                return
            with self.lock:
                if self.killed():
                    return
                if self.role != RaftState.LEADER:
                    self._spawn(self._elect)
                self._reset_vote_timer()

    def _elect(self) -> None:
        with self.lock:
            if self.killed():
                return
            self.current_term += 1
            self.role = RaftState.CANDIDATE
            self.voted_for = self.cur_node_id
            self._persist()

            logger.info(
                "server %s starts an election for term %s", self.cur_node_id, self.current_term
            )
            args = RequestVoteArgs(
                term=self.current_term,
                candidate_id=self.cur_node_id,
                last_log_index=self._virtual_log_idx(len(self.log) - 1),
                last_log_term=self.log.last().term,
            )
            ballot = _Ballot()
            for peer in range(len(self.cluster_configs)):
                if peer != self.cur_node_id:
                    self._spawn(self._collect_vote, peer, args, ballot)

    def _collect_vote(self, peer: int, args: RequestVoteArgs, ballot: _Ballot) -> None:
        if self.service is None:
            return
        address = self.cluster_configs[peer].addr
        if not self.service.get_vote_answer(address, args):
            logger.info("server %s got no vote from server %s", self.cur_node_id, peer)
            return

        majority = len(self.cluster_configs) // 2
        with ballot.lock:
            if ballot.count > majority:
                return
            ballot.count += 1
            logger.info(
                "server %s got a vote from server %s, votes: %s",
                self.cur_node_id, peer, ballot.count,
            )
            if ballot.count <= majority:
                return
            with self.lock:
                if self.role != RaftState.CANDIDATE or self.current_term != args.term:
                    logger.info(
                        "server %s state changed during election: role %s, term %s, "
                        "election term %s",
                        self.cur_node_id, raft_state_to_string(self.role),
                        self.current_term, args.term,
                    )
                    return
                logger.info("server %s became leader in term %s", self.cur_node_id, args.term)
                self.role = RaftState.LEADER
                next_idx = self._virtual_log_idx(len(self.log))
                for i in range(len(self.next_index)):
                    self.next_index[i] = next_idx
                    self.match_index[i] = self.last_included_index
            self._spawn(self._send_heartbeats)

    def _send_heartbeats(self) -> None:
        logger.info("server %s starts sending heartbeats", self.cur_node_id)
        while not self.killed():
            if not self.heart_timer.wait():
                return
            with self.lock:
                if self.role != RaftState.LEADER:
                    logger.info("server %s is no longer leader", self.cur_node_id)
                    return
                for peer in range(len(self.cluster_configs)):
                    if peer == self.cur_node_id:
                        continue
                    prev_index = self.next_index[peer] - 1
                    if prev_index < self.last_included_index:
                        logger.info(
                            "leader %s needs a snapshot for server %s: "
                            "last_included_index=%s, next_index=%s",
                            self.cur_node_id, peer, self.last_included_index,
                            self.next_index[peer],
                        )
                        continue
                    entries: list[Entry] = []
                    if self._virtual_log_idx(len(self.log) - 1) > prev_index:
                        entries = self.log[self._real_log_idx(prev_index + 1):]
                        logger.info(
                            "leader %s sends %s entries to server %s from prev_log_index %s",
                            self.cur_node_id, len(entries), peer, prev_index,
                        )
                    args = AppendEntriesArgs(
                        term=self.current_term,
                        leader_id=self.cur_node_id,
                        prev_log_index=prev_index,
                        prev_log_term=self.log[self._real_log_idx(prev_index)].term,
                        leader_commit=self.commit_index,
                        entries=entries,
                    )
                    self._spawn(self._handle_append_entries, peer, args)
                self._reset_heart_timer(HEARTBEAT_TIMEOUT_MS)

    def _handle_append_entries(self, peer: int, args: AppendEntriesArgs) -> None:
        if self.service is None:
            return
        reply = self.service.send_append_entries(self.cluster_configs[peer].addr, args)
        if reply is None:
            return

        with self.lock:
            if self.role != RaftState.LEADER or args.term != self.current_term:
                return

            if reply.success:
                new_match = args.prev_log_index + len(args.entries)
                if new_match > self.match_index[peer]:
                    self.match_index[peer] = new_match
                self.next_index[peer] = self.match_index[peer] + 1
                self._advance_commit_index()
                return

            if reply.term > self.current_term:
                logger.info(
                    "leader %s saw newer term %s from server %s, becoming follower",
                    self.cur_node_id, reply.term, peer,
                )
                self.current_term = reply.term
                self.role = RaftState.FOLLOWER
                self.voted_for = -1
                self._reset_vote_timer()
                self._persist()
                return

            if reply.term == self.current_term:
                self._back_off(peer, reply.x_term, reply.x_index, reply.x_len)

    def _advance_commit_index(self) -> None:
        n = self._virtual_log_idx(len(self.log) - 1)
        majority = len(self.cluster_configs) // 2
        while n > self.commit_index:
            current = self.log[self._real_log_idx(n)].term == self.current_term
            count = 1 + sum(
                1
                for i, matched in enumerate(self.match_index)
                if i != self.cur_node_id and matched >= n and current
            )
            if count > majority:
                break
            n -= 1
        self.commit_index = n

    def _back_off(self, peer: int, x_term: int, x_index: int, x_len: int) -> None:
        included = self.last_included_index
        if x_term == -1:
            logger.info(
                "leader %s backs off server %s: log too short, next_index %s -> %s",
                self.cur_node_id, peer, self.next_index[peer], x_len,
            )
            self.next_index[peer] = included if included >= x_len else x_len
            return

        i = max(self.next_index[peer] - 1, included)
        while i > included and self.log[self._real_log_idx(i)].term > x_term:
            i -= 1
        term_at_i = self.log[self._real_log_idx(i)].term
        if i == included and term_at_i > x_term:
            self.next_index[peer] = included
        elif term_at_i == x_term:
            self.next_index[peer] = i + 1
        else:
            self.next_index[peer] = included if x_index <= included else x_index
        logger.info(
            "leader %s backs off server %s to next_index %s (x_term=%s, x_index=%s)",
            self.cur_node_id, peer, self.next_index[peer], x_term, x_index,
        )