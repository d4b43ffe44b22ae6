import socket
import threading
from types import SimpleNamespace

import pytest

from raftkv.log_vec import LogVec
from raftkv.messages import AppendEntriesArgs, Entry, RequestVoteArgs
from raftkv.raft import RaftState
from raftkv.raft_rpc import RaftService


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


class FakeNode:
    def __init__(self, log_dir, node_id=0, addrs=("localhost:1",)):
        self.lock = threading.Lock()
        self.cur_node_id = node_id
        self.cluster_configs = [SimpleNamespace(addr=a) for a in addrs]
        self.current_term = 0
        self.voted_for = -1
        self.role = RaftState.FOLLOWER
        self.log = LogVec(str(log_dir))
        self.log.append(Entry())
        self.commit_index = 0
        self.last_applied = 0
        self.last_included_index = 0
        self.persist_calls = 0
        self.timer_resets = 0

    def _persist(self):
        self.persist_calls += 1

    def _reset_vote_timer(self):
        self.timer_resets += 1

    def _virtual_log_idx(self, index):
        return index + self.last_included_index

    def _real_log_idx(self, index):
        return index - self.last_included_index


@pytest.fixture
def node(tmp_path):
    fake = FakeNode(tmp_path / "log")
    yield fake
    fake.log.close()


@pytest.fixture
def service(node):
    return RaftService(node)


def test_request_vote_stale_term_refused(node, service):
    node.current_term = 5
    reply = service.request_vote(RequestVoteArgs(term=3, candidate_id=1))
    assert reply.vote_granted is False
    assert reply.term == 5
    assert node.voted_for == -1


def test_request_vote_newer_term_granted(node, service):
    reply = service.request_vote(RequestVoteArgs(term=2, candidate_id=1))
    assert reply.vote_granted is True
    assert reply.term == 2
    assert node.voted_for == 1
    assert node.role == RaftState.FOLLOWER
    assert node.timer_resets == 1
    assert node.persist_calls >= 1


def test_request_vote_already_voted_refused(node, service):
    node.current_term = 2
    node.voted_for = 2
    reply = service.request_vote(RequestVoteArgs(term=2, candidate_id=1))
    assert reply.vote_granted is False
    assert node.voted_for == 2


def test_request_vote_outdated_log_refused(node, service):
    node.log.append(Entry(seq=1, term=3))
    reply = service.request_vote(
        RequestVoteArgs(term=4, candidate_id=1, last_log_index=5, last_log_term=2)
    )
    assert reply.vote_granted is False
    assert node.current_term == 4
    assert node.voted_for == -1


def test_append_entries_stale_term(node, service):
    node.current_term = 3
    reply = service.append_entries(AppendEntriesArgs(term=1, leader_id=1))
    assert reply.success is False
    assert reply.term == 3
    assert node.timer_resets == 0


def test_append_entries_heartbeat(node, service):
    node.role = RaftState.CANDIDATE
    reply = service.append_entries(AppendEntriesArgs(term=1, leader_id=1))
    assert reply.success is True
    assert node.current_term == 1
    assert node.role == RaftState.FOLLOWER
    assert node.timer_resets == 1
    assert len(node.log) == 1


def test_append_entries_missing_prev_index(node, service):
    reply = service.append_entries(AppendEntriesArgs(term=1, leader_id=1, prev_log_index=7))
    assert reply.success is False
    assert reply.x_term == -1
    assert reply.x_len == len(node.log)


def test_append_entries_term_conflict(node, service):
    for term in (1, 2, 2):
        node.log.append(Entry(term=term))
    node.current_term = 3
    reply = service.append_entries(
        AppendEntriesArgs(term=3, leader_id=1, prev_log_index=3, prev_log_term=3)
    )
    assert reply.success is False
    assert reply.x_term == 2
    assert reply.x_index == 2
    assert reply.x_len == len(node.log)


def test_append_entries_appends_and_commits(node, service):
    node.log.append(Entry(seq=1, term=1))
    new_entry = Entry(seq=2, term=1, key="a", value="b")
    reply = service.append_entries(
        AppendEntriesArgs(
            term=1, leader_id=1, prev_log_index=1, prev_log_term=1,
            leader_commit=10, entries=[new_entry],
        )
    )
    assert reply.success is True
    assert node.log.last() == new_entry
    assert node.commit_index == len(node.log) - 1


def test_append_entries_truncates_conflicting_suffix(node, service):
    node.log.append(Entry(seq=1, term=1))
    node.log.append(Entry(seq=2, term=1, key="old"))
    node.log.append(Entry(seq=3, term=1, key="older"))
    replacement = Entry(seq=2, term=2, key="x")
    reply = service.append_entries(
        AppendEntriesArgs(
            term=2, leader_id=1, prev_log_index=1, prev_log_term=1, entries=[replacement]
        )
    )
    assert reply.success is True
    assert list(node.log) == [Entry(), Entry(seq=1, term=1), replacement]


def test_append_entries_existing_entries_kept(node, service):
    existing = Entry(seq=1, term=1, key="k")
    node.log.append(existing)
    reply = service.append_entries(
        AppendEntriesArgs(term=1, leader_id=1, prev_log_index=0, prev_log_term=0, entries=[existing])
    )
    assert reply.success is True
    assert list(node.log) == [Entry(), existing]


def test_unreachable_peer(node, service):
    address = f"localhost:{_free_port()}"
    node.role = RaftState.CANDIDATE
    node.current_term = 1
    assert service.get_vote_answer(address, RequestVoteArgs(term=1, candidate_id=0)) is False
    assert service.send_append_entries(address, AppendEntriesArgs(term=1)) is None
    service.stop()


@pytest.fixture
def cluster(tmp_path):
    addrs = (f"localhost:{_free_port()}", f"localhost:{_free_port()}")
    nodes = [FakeNode(tmp_path / f"log{i}", node_id=i, addrs=addrs) for i in range(2)]
    services = [RaftService.get_or_create(n) for n in nodes]
    try:
        yield nodes, services, addrs
    finally:
        for svc in services:
            svc.stop()
        for n in nodes:
            n.log.close()


def test_get_or_create_returns_same_instance(cluster):
    nodes, services, _ = cluster
    assert RaftService.get_or_create(nodes[0]) is services[0]
    assert services[0] is not services[1]


def test_vote_over_grpc(cluster):
    (candidate, voter), (svc, _), addrs = cluster
    candidate.role = RaftState.CANDIDATE
    candidate.current_term = 1
    granted = svc.get_vote_answer(addrs[1], RequestVoteArgs(term=1, candidate_id=0))
    assert granted is True
    assert voter.voted_for == 0
    assert voter.current_term == 1


def test_vote_reply_with_newer_term_steps_down(cluster):
    (candidate, voter), (svc, _), addrs = cluster
    candidate.role = RaftState.CANDIDATE
    candidate.current_term = 1
    voter.current_term = 5
    granted = svc.get_vote_answer(addrs[1], RequestVoteArgs(term=1, candidate_id=0))
    assert granted is False
    assert candidate.role == RaftState.FOLLOWER
    assert candidate.current_term == 5
    assert candidate.voted_for == -1


def test_send_append_entries_over_grpc(cluster):
    (leader, follower), (svc, _), addrs = cluster
    leader.role = RaftState.LEADER
    leader.current_term = 1
    reply = svc.send_append_entries(addrs[1], AppendEntriesArgs(term=1, leader_id=0))
    assert reply.success is True
    assert reply.term == 1
    assert follower.current_term == 1