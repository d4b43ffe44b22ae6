# raftkv

A small Raft consensus node in Python. Nodes elect a leader over gRPC,
replicate log entries with `AppendEntries`, and keep their log in an
append-only pair of files on disk.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Pieces

- `raftkv.timer`: `Timer`, a resettable deadline timer that election and
  heartbeat loops wait on. `reset(delay)` takes seconds. `wait()` returns
  `True` when the deadline passes and `False` once `stop()` has been called.
  A new timer's first `wait()` returns at once. `random_elect_timeout(low, high)`
  picks a random timeout in milliseconds, with both bounds included. The
  constants `HEARTBEAT_TIMEOUT_MS`, `MIN_ELECT_TIMEOUT_MS` and
  `MAX_ELECT_TIMEOUT_MS` are 155, 600 and 1000.
- `raftkv.messages`: the message types `Entry` (`seq`, `term`, `key`,
  `value`), `RequestVoteArgs`, `RequestVoteReply`, `AppendEntriesArgs` and
  `AppendEntriesReply`. `to_json` and `from_json` give the JSON that is sent
  over gRPC. `Entry.encode()` and `Entry.decode()` give the binary form that
  is written to disk.
- `raftkv.log_vec`: `LogVec`, a persistent list of entries. It is backed by
  a data file (`log.data`) and an offset index (`meta.data`), and
  `get_data_path` / `get_meta_path` give their paths. It supports `len()`,
  indexing and slicing (negative indices too), iteration, `reversed()`,
  `append`, `last`, `truncate_from`, `sync` and `close`, and it works as a
  context manager.
- `raftkv.node_service`: a minimal `NodeService` with `ping` and
  `send_message`. `send_message` prints the message and acknowledges it.
  This module also has `start_server(address)`, which returns a running
  `grpc.Server`, `run_server(address)`, which blocks until the server
  terminates, and `ping_client(address)`, which returns `"pong"` or
  `"error"`.
- `raftkv.raft_rpc`: `RaftService`, which serves `RequestVote` and
  `AppendEntries` for one node and sends those RPCs to its peers
  (`get_vote_answer`, `send_append_entries`). `RaftService.get_or_create(node)`
  returns the node's live service and starts it on the node's own address.
- `raftkv.raft`: `RaftNode`, `NodeConfig`, `RaftState` and
  `raft_state_to_string`.

## A persistent log

```python
from raftkv.log_vec import LogVec
from raftkv.messages import Entry

with LogVec("log_dir") as log:
    log.append(Entry(seq=0, term=1, key="hello", value="world"))
    print(len(log), log.last().key)
    for entry in reversed(log):
        print(entry.seq, entry.term)
    log.truncate_from(0)
```

## A three-node cluster

```python
import time
from raftkv.raft import NodeConfig, RaftNode, RaftState

configs = [NodeConfig("localhost:8745"), NodeConfig("localhost:8746"), NodeConfig("localhost:8747")]
nodes = [RaftNode.create(configs, f"store_{i}", i) for i in range(3)]

time.sleep(5)
leaders = [i for i, node in enumerate(nodes) if node.get_role() is RaftState.LEADER]
print("leader:", leaders)

for node in nodes:
    node.kill()
```

`RaftNode.create` opens the node's log in `log_dir` and adds an empty first
entry if the log is empty. It then starts the node's RPC server and, after
one second, its election timer. `get_state()` returns a tuple: the current
term, and whether `last_applied` is non-zero. `kill()` stops the timers,
the background loops and the RPC server.

The nodes log through the standard `logging` module, under the
`raftkv.raft` and `raftkv.raft_rpc` loggers.

## What it does not do

- No state machine: committed entries are never applied, so nothing works
  as a key-value store yet, and `last_applied` stays at 0.
- No public call to submit a new command to the leader. The log grows only
  through `AppendEntries` from a leader.
- No snapshots. When a follower would need one, the leader skips that
  follower.
- The term and vote are written to `raft_state` in the log directory, but a
  new node does not read them back. It always starts at term 0.
- No command-line program. Nodes are started from Python.

## Running the tests

```
pytest
```